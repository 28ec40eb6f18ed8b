"""
Sync Repository Interfaces

Abstract contracts for the collaborators of the sync layer: the remote
authoritative store, the audit persistence and the human-facing
notification sink.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, List

from .entities import AuditRecord
from .value_objects import AuditFilter, MutationKind

UndoCallback = Callable[[], Awaitable[Any]]


class RemoteStore(ABC):
    """
    Remote authoritative data access.

    Implementations must raise ``SyncException`` subclasses so failures can
    be classified as transient or permanent.
    """

    @abstractmethod
    async def fetch_domain(self, domain: str) -> Any:
        """Fetch the full payload of a domain partition."""
        pass

    @abstractmethod
    async def write_entity(self, domain: str, kind: MutationKind, payload: Any) -> Any:
        """Write one entity and return the server's authoritative result."""
        pass


class AuditStore(ABC):
    """Append-only persistence for audit records."""

    @abstractmethod
    async def append(self, record: AuditRecord) -> None:
        """Persist one record."""
        pass

    @abstractmethod
    async def query(self, audit_filter: AuditFilter) -> List[AuditRecord]:
        """Return matching records, newest first."""
        pass

    async def count(self) -> int:
        """Total number of stored records."""
        return len(await self.query(AuditFilter()))


class NotificationSink(ABC):
    """Surface for mutation lifecycle messages aimed at a human observer."""

    @abstractmethod
    def notify_pending(self, message: str) -> None:
        pass

    @abstractmethod
    def notify_success(self, message: str) -> None:
        pass

    @abstractmethod
    def notify_error(self, message: str) -> None:
        pass

    @abstractmethod
    def notify_undoable(self, message: str, on_undo: UndoCallback) -> None:
        """Offer a time-bounded undo affordance."""
        pass
