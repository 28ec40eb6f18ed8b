"""
Timeout Guard

Wraps any awaitable with a deadline. The deadline timer is cancelled on every
exit path: success, operation failure, timeout and caller cancellation.

A timeout cancels only the logical wait. The underlying operation keeps
running in the background and its result is ignored, unless ``abort=True``
is passed.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

import structlog

from ..domain.sync.exceptions import OperationTimeoutError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Operation = Union[Awaitable[T], Callable[[], Awaitable[T]]]


def _discard_result(task: "asyncio.Future[Any]") -> None:
    # Retrieve the late outcome so the loop does not report it as unhandled.
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.debug(
            "timed_out_operation_failed_late",
            error_type=type(error).__name__,
            error=str(error),
        )


def _expire(deadline: "asyncio.Future[None]") -> None:
    if not deadline.done():
        deadline.set_result(None)


async def run_with_timeout(
    operation: Operation[T],
    timeout_seconds: float,
    message: str,
    abort: bool = False,
) -> T:
    """
    Await ``operation`` with a deadline.

    Args:
        operation: Awaitable, or zero-argument callable returning one
        timeout_seconds: Positive deadline in seconds
        message: Diagnostic message carried by the timeout error
        abort: Cancel the operation when the deadline fires

    Returns:
        The operation's result

    Raises:
        OperationTimeoutError: If the deadline elapses first
        ValueError: If timeout_seconds is not positive
        Exception: Whatever the operation itself raised
    """
    if timeout_seconds <= 0:
        raise ValueError("timeout_seconds must be positive")

    if callable(operation) and not inspect.isawaitable(operation):
        operation = operation()

    loop = asyncio.get_running_loop()
    task = asyncio.ensure_future(operation)
    deadline: "asyncio.Future[None]" = loop.create_future()
    timer = loop.call_later(timeout_seconds, _expire, deadline)

    try:
        await asyncio.wait({task, deadline}, return_when=asyncio.FIRST_COMPLETED)
        if task.done():
            return task.result()

        if abort:
            task.cancel()
        task.add_done_callback(_discard_result)
        raise OperationTimeoutError(message, timeout_seconds)
    except asyncio.CancelledError:
        # Caller gave up; leave the operation running but unobserved.
        if not task.done():
            task.add_done_callback(_discard_result)
        raise
    finally:
        timer.cancel()
        if not deadline.done():
            deadline.cancel()


class TimeoutGuard:
    """
    Deadline wrapper with a configured default timeout.

    Stateless apart from its default; safe to share between components.
    """

    def __init__(self, default_timeout_seconds: float):
        if default_timeout_seconds <= 0:
            raise ValueError("default_timeout_seconds must be positive")
        self.default_timeout_seconds = default_timeout_seconds

    async def run(
        self,
        operation: Operation[T],
        message: str,
        timeout_seconds: Optional[float] = None,
        abort: bool = False,
    ) -> T:
        """Run ``operation`` under the given or default deadline."""
        return await run_with_timeout(
            operation,
            timeout_seconds or self.default_timeout_seconds,
            message,
            abort=abort,
        )
