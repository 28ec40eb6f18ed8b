"""
Synchronization Value Objects

Immutable value objects for the sync domain: domain keys, TTLs, enumerations
for mutation lifecycle and the retry and audit query policies.
"""

import random
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator


class MutationKind(str, Enum):
    """Kinds of entity writes."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"

    @property
    def is_destructive(self) -> bool:
        return self is MutationKind.DELETE


class MutationStatus(str, Enum):
    """Lifecycle states of a pending mutation."""

    APPLYING = "applying"
    RETRYING = "retrying"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            MutationStatus.COMMITTED,
            MutationStatus.ROLLED_BACK,
            MutationStatus.FAILED,
        )


class AuditAction(str, Enum):
    """Actions recorded in the audit trail."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    RESTORE = "restore"

    @classmethod
    def for_mutation(cls, kind: MutationKind) -> "AuditAction":
        return cls(kind.value)


class ErrorKind(str, Enum):
    """Failure classification for remote operations."""

    TIMEOUT = "timeout"
    NETWORK = "network"
    CONFLICT = "conflict"
    VALIDATION = "validation"
    FATAL = "fatal"


class UndoOutcome(str, Enum):
    """Result of consuming an undo token."""

    RESTORED = "restored"
    ALREADY_HANDLED = "already_handled"
    RESTORE_FAILED = "restore_failed"


class CacheLookup(str, Enum):
    """How a cache read was served."""

    HIT = "hit"
    MISS = "miss"
    SHARED = "shared"


@dataclass(frozen=True)
class DomainKey:
    """
    Immutable domain partition key.

    Domains name independent data partitions such as ``tasks`` or ``crm``.
    """

    value: str

    PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:\-]*$")

    def __post_init__(self) -> None:
        """Validate domain key format."""
        if not self.value:
            raise ValueError("Domain key cannot be empty")

        if len(self.value) > 100:
            raise ValueError("Domain key too long (max 100 characters)")

        if any(char.isspace() for char in self.value):
            raise ValueError("Domain key cannot contain whitespace")

        if not self.PATTERN.match(self.value):
            raise ValueError(f"Invalid domain key: {self.value}")

    @classmethod
    def of(cls, domain: Union[str, "DomainKey"]) -> "DomainKey":
        """Coerce a string or key into a validated key."""
        if isinstance(domain, DomainKey):
            return domain
        return cls(domain)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class TTL:
    """Time to live value object in seconds."""

    seconds: float

    def __post_init__(self) -> None:
        """Validate TTL value."""
        if self.seconds <= 0:
            raise ValueError("TTL must be positive")

        if self.seconds > 86400 * 7:
            raise ValueError("TTL cannot exceed 7 days")

    @classmethod
    def minutes(cls, minutes: float) -> "TTL":
        """Create TTL from minutes."""
        return cls(minutes * 60)

    @classmethod
    def default_partition(cls) -> "TTL":
        """Default freshness window for a domain partition (5 minutes)."""
        return cls.minutes(5)

    @classmethod
    def undo_window(cls) -> "TTL":
        """Default undo window (5 seconds)."""
        return cls(5)

    def __str__(self) -> str:
        return f"{self.seconds:g}s"


class RetryPolicy(BaseModel):
    """
    Exponential backoff policy for transient mutation failures.

    ``delay_for(n)`` is the pause before retry ``n + 1``:
    ``base * 2**n``, capped at ``max_delay_seconds``.
    """

    base_delay_seconds: float = Field(
        default=1.0, ge=0.0, le=60.0, description="Base delay in seconds"
    )
    max_delay_seconds: float = Field(
        default=30.0, ge=0.0, le=3600.0, description="Maximum delay in seconds"
    )
    multiplier: float = Field(
        default=2.0, ge=1.0, le=10.0, description="Delay multiplier"
    )
    jitter_factor: float = Field(
        default=0.0, ge=0.0, le=1.0, description="Jitter ratio (0 disables)"
    )
    respect_retry_after: bool = Field(
        default=True, description="Honour server supplied retry hints"
    )
    max_retries_create_update: int = Field(
        default=2, ge=0, le=10, description="Retries for create and update"
    )
    max_retries_delete: int = Field(
        default=1, ge=0, le=10, description="Retries for delete"
    )

    @model_validator(mode="after")
    def check_delays(self) -> "RetryPolicy":
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        return self

    def max_retries(self, kind: MutationKind) -> int:
        """Retry bound for a mutation kind."""
        if kind is MutationKind.DELETE:
            return self.max_retries_delete
        return self.max_retries_create_update

    def max_attempts(self, kind: MutationKind) -> int:
        """Total attempts (first try plus retries) for a mutation kind."""
        return self.max_retries(kind) + 1

    def delay_for(
        self,
        retry_index: int,
        retry_after: Optional[float] = None,
        rng: Callable[[], float] = random.random,
    ) -> float:
        """
        Compute the pause before a retry.

        Args:
            retry_index: Zero-based index of the retry about to happen
            retry_after: Server supplied retry hint in seconds
            rng: Source of uniform randomness for jitter

        Returns:
            Delay in seconds
        """
        if retry_index < 0:
            raise ValueError("retry_index must be >= 0")

        if retry_after is not None and self.respect_retry_after:
            return min(max(retry_after, 0.0), self.max_delay_seconds)

        delay = self.base_delay_seconds * (self.multiplier**retry_index)
        delay = min(delay, self.max_delay_seconds)

        if self.jitter_factor:
            jitter = self.jitter_factor
            delay *= 1 - jitter + rng() * 2 * jitter

        return delay


class AuditFilter(BaseModel):
    """Query filter for the audit trail. Unset fields match everything."""

    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    action: Optional[AuditAction] = None
    since: Optional[datetime] = Field(default=None, description="Inclusive lower bound")
    until: Optional[datetime] = Field(default=None, description="Inclusive upper bound")
    limit: Optional[int] = Field(default=None, ge=1, le=10000)

    @field_validator("since", "until")
    @classmethod
    def assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        """Naive bounds are read as UTC."""
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def check_range(self) -> "AuditFilter":
        if self.since and self.until and self.since > self.until:
            raise ValueError("since must not be after until")
        return self

    def matches(self, record: Any) -> bool:
        """Check whether an audit record satisfies this filter."""
        if self.entity_type is not None and record.entity_type != self.entity_type:
            return False
        if self.entity_id is not None and record.entity_id != self.entity_id:
            return False
        if self.action is not None and record.action != self.action:
            return False
        if self.since is not None and record.timestamp < self.since:
            return False
        if self.until is not None and record.timestamp > self.until:
            return False
        return True
