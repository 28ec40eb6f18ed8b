"""
Audit Store Implementations

Infrastructure implementations of the audit store interface: an in-process
list and a JSON-lines file for a durable trail.
"""

import asyncio
import threading
from pathlib import Path
from typing import List, Union

import structlog
from pydantic import ValidationError as PydanticValidationError

from ...core.config import Settings
from ...domain.sync.entities import AuditRecord
from ...domain.sync.repository_interfaces import AuditStore
from ...domain.sync.value_objects import AuditFilter

logger = structlog.get_logger(__name__)


def _apply_limit(records: List[AuditRecord], audit_filter: AuditFilter) -> List[AuditRecord]:
    if audit_filter.limit is not None:
        return records[: audit_filter.limit]
    return records


class InMemoryAuditStore(AuditStore):
    """Audit store backed by a process-local list."""

    def __init__(self):
        self._records: List[AuditRecord] = []

    async def append(self, record: AuditRecord) -> None:
        self._records.append(record)

    async def query(self, audit_filter: AuditFilter) -> List[AuditRecord]:
        matches = [
            record for record in reversed(self._records) if audit_filter.matches(record)
        ]
        return _apply_limit(matches, audit_filter)

    async def count(self) -> int:
        return len(self._records)


class JsonLinesAuditStore(AuditStore):
    """
    Audit store appending one JSON document per line.

    File I/O runs in a worker thread so the event loop is never blocked.
    Lines that fail to parse are skipped with a warning.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = threading.Lock()

    async def append(self, record: AuditRecord) -> None:
        line = record.model_dump_json()
        await asyncio.to_thread(self._append_line, line)

    async def query(self, audit_filter: AuditFilter) -> List[AuditRecord]:
        records = await asyncio.to_thread(self._read_all)
        matches = [record for record in reversed(records) if audit_filter.matches(record)]
        return _apply_limit(matches, audit_filter)

    async def count(self) -> int:
        return len(await asyncio.to_thread(self._read_all))

    def _append_line(self, line: str) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")

    def _read_all(self) -> List[AuditRecord]:
        with self._lock:
            if not self.path.exists():
                return []
            lines = self.path.read_text(encoding="utf-8").splitlines()

        records: List[AuditRecord] = []
        for number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                records.append(AuditRecord.model_validate_json(line))
            except PydanticValidationError as e:
                logger.warning(
                    "audit_line_skipped",
                    path=str(self.path),
                    line=number,
                    error=str(e),
                )
        return records


def build_audit_store(settings: Settings) -> AuditStore:
    """Audit store selected by ``AUDIT_LOG_PATH``."""
    if settings.AUDIT_LOG_PATH:
        return JsonLinesAuditStore(settings.AUDIT_LOG_PATH)
    return InMemoryAuditStore()
