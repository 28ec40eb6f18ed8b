"""
Audit Log Recorder

Append-only trail of committed mutations. Writes are bounded by a deadline
and best-effort: a failed write is logged and counted but never undoes the
mutation it describes.
"""

from typing import Any, List, Optional

import structlog
from opentelemetry import trace

from ...core.timeout import run_with_timeout
from ...domain.sync.entities import AuditRecord
from ...domain.sync.repository_interfaces import AuditStore
from ...domain.sync.value_objects import AuditFilter
from ...monitoring.metrics import SyncMetrics

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)


class AuditLogRecorder:
    """Best-effort writer and newest-first reader of audit records."""

    def __init__(
        self,
        store: AuditStore,
        write_timeout_seconds: float = 2.0,
        metrics: Optional[SyncMetrics] = None,
    ):
        self._store = store
        self._write_timeout_seconds = write_timeout_seconds
        self._metrics = metrics

    @property
    def store(self) -> AuditStore:
        return self._store

    async def record(self, entry: AuditRecord) -> bool:
        """
        Append one record.

        Returns:
            True if the store accepted the record within the deadline
        """
        with tracer.start_as_current_span("audit.record") as span:
            span.set_attribute("action", entry.action.value)
            span.set_attribute("entity_type", entry.entity_type)

            try:
                await run_with_timeout(
                    lambda: self._store.append(entry),
                    self._write_timeout_seconds,
                    f"Audit write exceeded {self._write_timeout_seconds:g}s",
                )
            except Exception as e:
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                if self._metrics:
                    self._metrics.record_audit_failure()
                logger.error(
                    "audit_write_failed",
                    record_id=str(entry.id),
                    entity_type=entry.entity_type,
                    entity_id=entry.entity_id,
                    action=entry.action.value,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                return False

            logger.debug(
                "audit_recorded",
                record_id=str(entry.id),
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                action=entry.action.value,
            )
            return True

    async def query(
        self, audit_filter: Optional[AuditFilter] = None, **criteria: Any
    ) -> List[AuditRecord]:
        """
        Records matching a filter, newest first.

        Keyword criteria build a filter when none is given, e.g.
        ``query(entity_type="tasks", action="delete")``.
        """
        if audit_filter is None:
            audit_filter = AuditFilter(**criteria)
        elif criteria:
            audit_filter = AuditFilter(**{**audit_filter.model_dump(), **criteria})

        records = await self._store.query(audit_filter)
        records = sorted(records, key=lambda record: record.timestamp, reverse=True)
        if audit_filter.limit is not None:
            records = records[: audit_filter.limit]
        return records

    async def history(
        self, entity_type: str, entity_id: str, limit: int = 50
    ) -> List[AuditRecord]:
        """Recent history of one entity."""
        return await self.query(
            AuditFilter(entity_type=entity_type, entity_id=entity_id, limit=limit)
        )
