"""
Synchronization Exceptions

Error taxonomy for remote reads and writes. Every error carries a kind and
a transient flag; the mutation coordinator retries transient errors and
rolls back on everything else.
"""

import asyncio
from typing import Any, Dict, Optional

from .value_objects import ErrorKind


class SyncException(Exception):
    """Base exception for synchronization errors.

    Remote adapters should raise this or its subclasses so failures can be
    classified without inspecting messages.
    """

    kind: ErrorKind = ErrorKind.FATAL
    transient: bool = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class OperationTimeoutError(SyncException):
    """Raised when an operation misses its deadline."""

    kind = ErrorKind.TIMEOUT
    transient = True

    def __init__(self, message: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            message=message,
            error_code="OPERATION_TIMEOUT",
            details={"timeout_seconds": timeout_seconds},
        )


class NetworkError(SyncException):
    """Raised when the transport fails before the server answers."""

    kind = ErrorKind.NETWORK
    transient = True

    def __init__(
        self,
        message: str = "Network request failed",
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        original_error: Optional[Exception] = None,
    ):
        self.status_code = status_code
        self.retry_after = retry_after
        details: Dict[str, Any] = {}
        if status_code is not None:
            details["status_code"] = status_code
        if retry_after is not None:
            details["retry_after"] = retry_after
        if original_error:
            details["original_error"] = str(original_error)
            details["original_error_type"] = type(original_error).__name__

        super().__init__(message=message, error_code="NETWORK_ERROR", details=details)
        # Preserve exception context for debugging (exception chaining)
        if original_error:
            self.__cause__ = original_error


class ConflictError(SyncException):
    """Raised when the server rejects a write against a stale version."""

    kind = ErrorKind.CONFLICT

    def __init__(
        self,
        message: str = "The record was changed elsewhere",
        entity_id: Optional[str] = None,
    ):
        details = {"entity_id": entity_id} if entity_id else {}
        super().__init__(message=message, error_code="CONFLICT", details=details)


class ValidationError(SyncException):
    """Raised when the server rejects a payload; message is user-facing."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, fields: Optional[Dict[str, Any]] = None):
        details = {"fields": fields} if fields else {}
        super().__init__(message=message, error_code="VALIDATION_ERROR", details=details)


class FatalError(SyncException):
    """Unexpected or unclassified failure."""

    kind = ErrorKind.FATAL

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        details: Dict[str, Any] = {}
        if original_error:
            details["original_error"] = str(original_error)
            details["original_error_type"] = type(original_error).__name__
        super().__init__(message=message, error_code="FATAL_ERROR", details=details)
        if original_error:
            self.__cause__ = original_error


class InvalidTransitionError(SyncException):
    """Raised when a pending mutation is moved along an illegal edge."""

    def __init__(self, current: str, requested: str):
        super().__init__(
            message=f"Illegal mutation transition {current} -> {requested}",
            error_code="INVALID_TRANSITION",
            details={"current": current, "requested": requested},
        )


class UnknownDomainError(SyncException):
    """Raised when the remote store does not serve a domain."""

    def __init__(self, domain: str):
        super().__init__(
            message=f"Domain '{domain}' is not served by the remote store",
            error_code="UNKNOWN_DOMAIN",
            details={"domain": domain},
        )


GENERIC_FAILURE_MESSAGE = "Something went wrong while saving. Please try again."
CONFLICT_MESSAGE = (
    "This record was changed elsewhere. Refresh and retry your change manually."
)


def classify_error(error: BaseException) -> ErrorKind:
    """Map any exception onto the error taxonomy."""
    if isinstance(error, SyncException):
        return error.kind
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(error, ConnectionError):
        return ErrorKind.NETWORK
    return ErrorKind.FATAL


def is_transient(error: BaseException) -> bool:
    """True for errors worth retrying (timeouts and transport failures)."""
    return classify_error(error) in (ErrorKind.TIMEOUT, ErrorKind.NETWORK)


def user_message(error: BaseException) -> str:
    """Message surfaced to a human observer for a terminal failure."""
    kind = classify_error(error)
    if kind is ErrorKind.CONFLICT:
        return CONFLICT_MESSAGE
    if kind is ErrorKind.VALIDATION:
        return str(error)
    if kind is ErrorKind.TIMEOUT:
        return f"The server did not respond in time: {error}"
    if kind is ErrorKind.NETWORK:
        return f"Could not reach the server: {error}"
    return GENERIC_FAILURE_MESSAGE
