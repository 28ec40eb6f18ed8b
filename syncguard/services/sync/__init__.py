"""
Sync Services

Cache partitions, mutation coordination, audit and undo.
"""

from .audit_recorder import AuditLogRecorder
from .cache_partitions import CachePartitionManager
from .mutation_coordinator import MutationCoordinator
from .notifications import LoggingNotificationSink, NullNotificationSink
from .sync_session import SyncSession
from .undo_registry import UndoRegistry

__all__ = [
    "AuditLogRecorder",
    "CachePartitionManager",
    "LoggingNotificationSink",
    "MutationCoordinator",
    "NullNotificationSink",
    "SyncSession",
    "UndoRegistry",
]
