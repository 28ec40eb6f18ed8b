"""
Synchronization Domain Entities

Core entities for the sync layer: cache entries, pending mutations, audit
records and undo tokens. Encapsulates the lifecycle rules of each.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from ...constants import get_current_timestamp
from .exceptions import InvalidTransitionError, SyncException
from .value_objects import (
    TTL,
    AuditAction,
    ErrorKind,
    MutationKind,
    MutationStatus,
    UndoOutcome,
)

PatchFn = Callable[[Any], Any]
RemoteFn = Callable[[], Awaitable[Any]]
RestoreAction = Callable[[], Awaitable[Any]]

ALLOWED_TRANSITIONS: Dict[MutationStatus, FrozenSet[MutationStatus]] = {
    MutationStatus.APPLYING: frozenset(
        {
            MutationStatus.COMMITTED,
            MutationStatus.RETRYING,
            MutationStatus.ROLLED_BACK,
        }
    ),
    MutationStatus.RETRYING: frozenset(
        {MutationStatus.APPLYING, MutationStatus.FAILED}
    ),
}


@dataclass
class CacheEntry:
    """
    Last known snapshot of one domain partition.

    Times are readings of the owning manager's monotonic clock. At most one
    fetch is in flight per entry.
    """

    domain: str
    payload: Any = None
    fetched_at: Optional[float] = None
    expires_at: float = 0.0
    provisional: bool = False
    invalidated_at: Optional[float] = None
    version: int = 0
    generation: int = 0
    in_flight_fetch: Optional["asyncio.Future[Any]"] = None
    fetch_generation: Optional[int] = None

    @classmethod
    def placeholder(cls, domain: str) -> "CacheEntry":
        """Entry for a domain that has never been fetched."""
        return cls(domain=domain)

    @classmethod
    def from_fetch(
        cls, domain: str, payload: Any, fetched_at: float, ttl: TTL
    ) -> "CacheEntry":
        """Authoritative entry built from a completed fetch."""
        return cls(
            domain=domain,
            payload=payload,
            fetched_at=fetched_at,
            expires_at=fetched_at + ttl.seconds,
        )

    @property
    def has_data(self) -> bool:
        return self.fetched_at is not None

    @property
    def is_fetching(self) -> bool:
        return self.in_flight_fetch is not None and not self.in_flight_fetch.done()

    @property
    def fetch_is_current(self) -> bool:
        """True while the in-flight fetch started after the last invalidation."""
        return self.is_fetching and self.fetch_generation == self.generation

    def is_fresh(self, now: float) -> bool:
        """Fresh entries are served without a fetch."""
        return self.has_data and now < self.expires_at

    def invalidate(self, now: float) -> None:
        """Mark stale immediately; the payload is kept."""
        self.expires_at = min(self.expires_at, now)
        self.invalidated_at = now
        self.generation += 1

    def age(self, now: float) -> Optional[float]:
        if self.fetched_at is None:
            return None
        return now - self.fetched_at


@dataclass
class PendingMutation:
    """
    One write attempt in flight.

    Owned exclusively by the mutation coordinator and discarded once it
    reaches a terminal status.
    """

    domain: str
    kind: MutationKind
    payload: Any
    apply_fn: PatchFn
    entity_id: Optional[str] = None
    id: UUID = field(default_factory=uuid4)
    status: MutationStatus = MutationStatus.APPLYING
    snapshot_before_apply: Any = None
    patch_applied: bool = False
    applied_order: int = 0
    cache_version: Optional[int] = None
    retry_count: int = 0
    attempts: int = 0
    last_error: Optional[BaseException] = None
    sequence: int = 0
    created_at: datetime = field(default_factory=get_current_timestamp)

    def can_transition(self, new_status: MutationStatus) -> bool:
        return new_status in ALLOWED_TRANSITIONS.get(self.status, frozenset())

    def transition(self, new_status: MutationStatus) -> None:
        """Move along a legal edge of the lifecycle state machine."""
        if not self.can_transition(new_status):
            raise InvalidTransitionError(self.status.value, new_status.value)
        self.status = new_status

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def serialization_key(self) -> Optional[str]:
        """Key shared by mutations on the same entity."""
        if self.entity_id is None:
            return None
        return f"{self.domain}:{self.entity_id}"


class AuditRecord(BaseModel):
    """Immutable entry of the audit trail."""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    entity_type: str
    entity_id: Optional[str] = None
    action: AuditAction
    old_value: Any = None
    new_value: Any = None
    actor_id: str
    timestamp: datetime = Field(default_factory=get_current_timestamp)
    mutation_id: Optional[UUID] = None


@dataclass
class UndoToken:
    """
    Short-lived reversal action for a committed destructive mutation.

    ``expires_at`` is a reading of the registry's monotonic clock.
    """

    mutation_id: UUID
    expires_at: float
    restore_action: RestoreAction
    consumed: bool = False
    description: str = ""

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def is_available(self, now: float) -> bool:
        return not self.consumed and not self.is_expired(now)

    def consume(self) -> None:
        self.consumed = True

    def remaining(self, now: float) -> float:
        return max(0.0, self.expires_at - now)


@dataclass
class MutationOptions:
    """Per-mutation knobs accepted by ``MutationCoordinator.submit``."""

    entity_id: Optional[str] = None
    entity_type: Optional[str] = None
    actor_id: Optional[str] = None
    id_field: str = "id"
    timeout_seconds: Optional[float] = None
    description: Optional[str] = None
    # (optimistic payload, server result) -> reconciled payload
    reconcile_fn: Optional[Callable[[Any, Any], Any]] = None
    # record -> awaitable creating a fresh copy remotely
    restore_fn: Optional[Callable[[Any], Awaitable[Any]]] = None
    undoable: Optional[bool] = None
    undo_ttl: Optional[TTL] = None


@dataclass
class MutationOutcome:
    """Structured terminal result of a submitted mutation."""

    mutation_id: UUID
    domain: str
    kind: MutationKind
    status: MutationStatus
    entity_id: Optional[str] = None
    result: Any = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    attempts: int = 0
    error: Optional[BaseException] = None
    undo_available: bool = False

    @property
    def ok(self) -> bool:
        return self.status is MutationStatus.COMMITTED

    def raise_for_error(self) -> "MutationOutcome":
        """Raise the terminal error if the mutation did not commit."""
        if self.ok:
            return self
        if isinstance(self.error, SyncException):
            raise self.error
        raise SyncException(
            self.message or "Mutation failed",
            error_code=(self.error_kind or ErrorKind.FATAL).value.upper(),
        ) from self.error


@dataclass
class UndoResult:
    """Result of consuming an undo token."""

    mutation_id: UUID
    outcome: UndoOutcome
    result: Any = None
    message: Optional[str] = None
    error: Optional[BaseException] = None

    @property
    def restored(self) -> bool:
        return self.outcome is UndoOutcome.RESTORED
