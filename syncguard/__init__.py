"""
syncguard

Client-side data synchronization layer: partitioned cache, optimistic
mutations with retry and rollback, undo and audit trail.
"""

from .services.sync import SyncSession

__all__ = ["SyncSession"]
