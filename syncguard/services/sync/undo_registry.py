"""
Undo Registry

Holds short-lived reversal actions for committed destructive mutations.
Each token can be consumed at most once, and only before it expires.
Expired tokens are dropped lazily on access, so no timers are held.
"""

import time
from typing import Callable, Dict, Optional
from uuid import UUID

import structlog
from opentelemetry import trace

from ...domain.sync.entities import RestoreAction, UndoResult, UndoToken
from ...domain.sync.exceptions import user_message
from ...domain.sync.value_objects import TTL, UndoOutcome
from ...monitoring.metrics import SyncMetrics

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)

ALREADY_HANDLED_MESSAGE = "This action can no longer be undone."


class UndoRegistry:
    """Exactly-once, time-bounded undo tokens keyed by mutation id."""

    def __init__(
        self,
        default_ttl: Optional[TTL] = None,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[SyncMetrics] = None,
    ):
        self._default_ttl = default_ttl or TTL.undo_window()
        self._clock = clock
        self._metrics = metrics
        self._tokens: Dict[UUID, UndoToken] = {}

    def __len__(self) -> int:
        self.purge_expired()
        return len(self._tokens)

    def register(
        self,
        mutation_id: UUID,
        restore_action: RestoreAction,
        ttl: Optional[TTL] = None,
        description: str = "",
    ) -> UndoToken:
        """
        Register the reversal action of a committed mutation.

        Raises:
            ValueError: If a live token already exists for the mutation
        """
        self.purge_expired()
        if mutation_id in self._tokens:
            raise ValueError(f"Undo token already registered for {mutation_id}")

        ttl = ttl or self._default_ttl
        token = UndoToken(
            mutation_id=mutation_id,
            expires_at=self._clock() + ttl.seconds,
            restore_action=restore_action,
            description=description,
        )
        self._tokens[mutation_id] = token

        logger.debug(
            "undo_token_registered", mutation_id=str(mutation_id), ttl=str(ttl)
        )
        return token

    def is_available(self, mutation_id: UUID) -> bool:
        token = self._tokens.get(mutation_id)
        return token is not None and token.is_available(self._clock())

    def remaining(self, mutation_id: UUID) -> float:
        """Seconds left before the token expires (0.0 if unavailable)."""
        token = self._tokens.get(mutation_id)
        if token is None or token.consumed:
            return 0.0
        return token.remaining(self._clock())

    async def consume(self, mutation_id: UUID) -> UndoResult:
        """
        Run the reversal action of a mutation, at most once.

        Consuming an unknown, consumed or expired token reports
        ``ALREADY_HANDLED``; this method never raises for those cases.
        A failing restore consumes the token and reports ``RESTORE_FAILED``.
        """
        with tracer.start_as_current_span("undo.consume") as span:
            span.set_attribute("mutation_id", str(mutation_id))

            token = self._tokens.get(mutation_id)
            if token is None or not token.is_available(self._clock()):
                self._tokens.pop(mutation_id, None)
                span.set_attribute("undo_outcome", UndoOutcome.ALREADY_HANDLED.value)
                self._record(UndoOutcome.ALREADY_HANDLED)
                logger.info("undo_already_handled", mutation_id=str(mutation_id))
                return UndoResult(
                    mutation_id=mutation_id,
                    outcome=UndoOutcome.ALREADY_HANDLED,
                    message=ALREADY_HANDLED_MESSAGE,
                )

            # Claimed before the first await so a concurrent consume sees it.
            token.consume()
            del self._tokens[mutation_id]

            try:
                result = await token.restore_action()
            except Exception as e:
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                self._record(UndoOutcome.RESTORE_FAILED)
                logger.error(
                    "undo_restore_failed",
                    mutation_id=str(mutation_id),
                    error_type=type(e).__name__,
                    error=str(e),
                )
                return UndoResult(
                    mutation_id=mutation_id,
                    outcome=UndoOutcome.RESTORE_FAILED,
                    message=user_message(e),
                    error=e,
                )

            span.set_attribute("undo_outcome", UndoOutcome.RESTORED.value)
            self._record(UndoOutcome.RESTORED)
            logger.info("undo_restored", mutation_id=str(mutation_id))
            return UndoResult(
                mutation_id=mutation_id, outcome=UndoOutcome.RESTORED, result=result
            )

    def purge_expired(self) -> int:
        """Drop expired or consumed tokens; returns how many were removed."""
        now = self._clock()
        stale = [
            mutation_id
            for mutation_id, token in self._tokens.items()
            if not token.is_available(now)
        ]
        for mutation_id in stale:
            del self._tokens[mutation_id]
        return len(stale)

    def _record(self, outcome: UndoOutcome) -> None:
        if self._metrics:
            self._metrics.record_undo(outcome.value)
