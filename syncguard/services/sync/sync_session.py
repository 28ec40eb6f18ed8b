"""
Sync Session

Facade owning one cache, one mutation coordinator, one undo registry and one
audit recorder for an application session. Consumers receive the session by
reference; nothing here is a module-level singleton.
"""

import asyncio
import time
from dataclasses import replace
from typing import Any, Callable, List, Mapping, Optional, Union
from uuid import UUID, uuid4

import structlog

from ...core.config import Settings, get_settings
from ...domain.sync.entities import (
    AuditRecord,
    MutationOptions,
    MutationOutcome,
    PatchFn,
    RemoteFn,
    UndoResult,
)
from ...domain.sync.records import (
    extract_entity_id,
    insert_record,
    locate_record,
    merge_record,
    remove_record,
    replace_record,
)
from ...domain.sync.repository_interfaces import (
    AuditStore,
    NotificationSink,
    RemoteStore,
)
from ...domain.sync.value_objects import TTL, AuditFilter, DomainKey, MutationKind
from ...infrastructure.repositories.audit_repository import build_audit_store
from ...monitoring.metrics import SyncMetrics
from .audit_recorder import AuditLogRecorder
from .cache_partitions import CachePartitionManager
from .mutation_coordinator import MutationCoordinator
from .notifications import LoggingNotificationSink
from .undo_registry import UndoRegistry

logger = structlog.get_logger(__name__)


class SyncSession:
    """
    Caller-facing surface of the sync layer.

    Usage:
        session = SyncSession.from_settings(HttpRemoteStore.from_settings(settings))
        tasks = await session.get("tasks")
        outcome = await session.update("tasks", task_id, {"status": "done"})
    """

    def __init__(
        self,
        remote: RemoteStore,
        cache: CachePartitionManager,
        coordinator: MutationCoordinator,
        audit: AuditLogRecorder,
        undo: UndoRegistry,
        metrics: SyncMetrics,
        notifications: Optional[NotificationSink] = None,
    ):
        self.remote = remote
        self.cache = cache
        self.coordinator = coordinator
        self.audit = audit
        self.undo = undo
        self.metrics = metrics
        self.notifications = notifications

    @classmethod
    def from_settings(
        cls,
        remote: RemoteStore,
        settings: Optional[Settings] = None,
        notifications: Optional[NotificationSink] = None,
        audit_store: Optional[AuditStore] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep=asyncio.sleep,
        metrics: Optional[SyncMetrics] = None,
    ) -> "SyncSession":
        """Wire every component from settings."""
        settings = settings or get_settings()
        metrics = metrics or SyncMetrics()
        if notifications is None:
            notifications = LoggingNotificationSink()

        cache = CachePartitionManager(
            remote.fetch_domain,
            default_ttl=TTL(settings.CACHE_DEFAULT_TTL_SECONDS),
            domain_ttls=settings.domain_ttls(),
            fetch_timeout_seconds=settings.fetch_timeout_seconds,
            clock=clock,
            metrics=metrics,
        )
        audit = AuditLogRecorder(
            audit_store or build_audit_store(settings),
            write_timeout_seconds=settings.AUDIT_WRITE_TIMEOUT_SECONDS,
            metrics=metrics,
        )
        undo = UndoRegistry(
            default_ttl=TTL(settings.undo_window_seconds), clock=clock, metrics=metrics
        )
        coordinator = MutationCoordinator(
            cache,
            audit,
            undo,
            retry_policy=settings.retry_policy(),
            write_timeout_seconds=settings.write_timeout_seconds,
            notifications=notifications,
            remote=remote,
            default_actor_id=settings.DEFAULT_ACTOR_ID,
            sleep=sleep,
            metrics=metrics,
        )

        logger.info(
            "sync_session_created",
            environment=settings.environment,
            default_ttl_seconds=settings.CACHE_DEFAULT_TTL_SECONDS,
            audit_store=type(audit.store).__name__,
        )
        return cls(remote, cache, coordinator, audit, undo, metrics, notifications)

    # Reads

    async def get(self, domain: Union[str, DomainKey], force: bool = False) -> Any:
        return await self.cache.get(domain, force=force)

    async def prefetch(self, domain: Union[str, DomainKey]) -> bool:
        return await self.cache.prefetch(domain)

    def peek(self, domain: Union[str, DomainKey]) -> Any:
        return self.cache.peek(domain)

    def invalidate(self, domain: Union[str, DomainKey]) -> bool:
        return self.cache.invalidate(domain)

    def invalidate_all(self) -> int:
        return self.cache.invalidate_all()

    # Writes

    async def submit(
        self,
        domain: Union[str, DomainKey],
        kind: Union[str, MutationKind],
        payload: Any,
        apply_fn: PatchFn,
        remote_fn: RemoteFn,
        options: Optional[MutationOptions] = None,
    ) -> MutationOutcome:
        return await self.coordinator.submit(
            domain, kind, payload, apply_fn, remote_fn, options
        )

    async def create(
        self,
        domain: Union[str, DomainKey],
        record: Mapping[str, Any],
        options: Optional[MutationOptions] = None,
    ) -> MutationOutcome:
        """
        Create a record, shown immediately under a temporary id.

        The server copy replaces the placeholder when the write commits.
        """
        key = DomainKey.of(domain).value
        options = options or MutationOptions()
        id_field = options.id_field

        entity_id = extract_entity_id(record, id_field)
        placeholder_id = entity_id or f"temp-{uuid4()}"
        optimistic = {**record, id_field: placeholder_id}

        def reconcile(payload: Any, result: Any) -> Any:
            if isinstance(result, Mapping):
                return replace_record(payload, placeholder_id, result, id_field)
            return payload

        options = replace(
            options,
            entity_id=entity_id,
            reconcile_fn=options.reconcile_fn or reconcile,
        )
        return await self.coordinator.submit(
            key,
            MutationKind.CREATE,
            dict(record),
            lambda payload: insert_record(payload, optimistic),
            lambda: self.remote.write_entity(key, MutationKind.CREATE, dict(record)),
            options,
        )

    async def update(
        self,
        domain: Union[str, DomainKey],
        entity_id: Any,
        changes: Mapping[str, Any],
        options: Optional[MutationOptions] = None,
    ) -> MutationOutcome:
        """Shallow-merge ``changes`` into one record."""
        key = DomainKey.of(domain).value
        options = options or MutationOptions()
        id_field = options.id_field
        entity_id = str(entity_id)
        payload = {**changes, id_field: entity_id}

        def reconcile(current: Any, result: Any) -> Any:
            if isinstance(result, Mapping):
                return replace_record(current, entity_id, result, id_field)
            return current

        options = replace(
            options,
            entity_id=entity_id,
            reconcile_fn=options.reconcile_fn or reconcile,
        )
        return await self.coordinator.submit(
            key,
            MutationKind.UPDATE,
            payload,
            lambda current: merge_record(current, entity_id, changes, id_field),
            lambda: self.remote.write_entity(key, MutationKind.UPDATE, payload),
            options,
        )

    async def delete(
        self,
        domain: Union[str, DomainKey],
        entity_id: Any,
        options: Optional[MutationOptions] = None,
    ) -> MutationOutcome:
        """Delete one record; undoable for the configured window."""
        key = DomainKey.of(domain).value
        options = options or MutationOptions()
        id_field = options.id_field
        entity_id = str(entity_id)

        cached = locate_record(self.cache.peek(key), entity_id, id_field)
        payload = dict(cached) if cached is not None else {id_field: entity_id}

        options = replace(options, entity_id=entity_id)
        return await self.coordinator.submit(
            key,
            MutationKind.DELETE,
            payload,
            lambda current: remove_record(current, entity_id, id_field),
            lambda: self.remote.write_entity(
                key, MutationKind.DELETE, {id_field: entity_id}
            ),
            options,
        )

    # Audit and undo

    async def query_audit(
        self, audit_filter: Optional[AuditFilter] = None, **criteria: Any
    ) -> List[AuditRecord]:
        return await self.audit.query(audit_filter, **criteria)

    async def history(
        self, entity_type: str, entity_id: str, limit: int = 50
    ) -> List[AuditRecord]:
        return await self.audit.history(entity_type, entity_id, limit=limit)

    async def consume_undo(self, mutation_id: UUID) -> UndoResult:
        return await self.undo.consume(mutation_id)

    def render_metrics(self) -> bytes:
        return self.metrics.render()
