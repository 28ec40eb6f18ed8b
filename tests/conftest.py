"""
Main pytest configuration for syncguard tests.

Fakes for the remote store, the clock, retry sleeps and the notification
sink, plus fixtures wiring them into a sync session.
"""

import asyncio
import itertools
import os
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

# Set test environment variables before importing package modules
os.environ["ENVIRONMENT"] = "test"
os.environ["LOG_LEVEL"] = "DEBUG"

from syncguard.core.config import Settings
from syncguard.domain.sync.exceptions import UnknownDomainError
from syncguard.domain.sync.repository_interfaces import (
    NotificationSink,
    RemoteStore,
    UndoCallback,
)
from syncguard.domain.sync.value_objects import MutationKind
from syncguard.infrastructure.repositories.audit_repository import InMemoryAuditStore
from syncguard.monitoring.metrics import SyncMetrics
from syncguard.services.sync.sync_session import SyncSession


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Retry sleep that records delays instead of waiting."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.delays: List[float] = []
        self.clock = clock
        self.on_sleep: Optional[Callable[[float], None]] = None

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.clock is not None:
            self.clock.advance(delay)
        if self.on_sleep is not None:
            self.on_sleep(delay)
        await asyncio.sleep(0)

    @property
    def total(self) -> float:
        return sum(self.delays)


class FakeRemoteStore(RemoteStore):
    """In-memory remote store with scriptable failures."""

    def __init__(self, data: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.data = {
            domain: [dict(record) for record in records]
            for domain, records in (data or {}).items()
        }
        self.fetch_calls: List[str] = []
        self.write_calls: List[Tuple[str, MutationKind, Any]] = []
        self.fetch_errors: List[Exception] = []
        self.write_failures: List[Exception] = []
        self.fetch_gate: Optional[asyncio.Event] = None
        self._ids = itertools.count(1)

    async def fetch_domain(self, domain: str) -> Any:
        self.fetch_calls.append(domain)
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        if domain not in self.data:
            raise UnknownDomainError(domain)
        return [dict(record) for record in self.data[domain]]

    async def write_entity(self, domain: str, kind: MutationKind, payload: Any) -> Any:
        kind = MutationKind(kind)
        self.write_calls.append((domain, kind, payload))
        if self.write_failures:
            raise self.write_failures.pop(0)

        records = self.data.setdefault(domain, [])
        if kind is MutationKind.CREATE:
            record = {**payload, "id": f"srv-{next(self._ids)}"}
            records.insert(0, record)
            return dict(record)

        entity_id = str(payload["id"])
        if kind is MutationKind.UPDATE:
            for index, record in enumerate(records):
                if str(record["id"]) == entity_id:
                    records[index] = {**record, **payload}
                    return dict(records[index])
            return dict(payload)

        self.data[domain] = [r for r in records if str(r["id"]) != entity_id]
        return None


class RecordingNotificationSink(NotificationSink):
    """Collects notifications for assertions."""

    def __init__(self):
        self.messages: List[Tuple[str, str]] = []
        self.undo_callbacks: List[UndoCallback] = []

    def notify_pending(self, message: str) -> None:
        self.messages.append(("pending", message))

    def notify_success(self, message: str) -> None:
        self.messages.append(("success", message))

    def notify_error(self, message: str) -> None:
        self.messages.append(("error", message))

    def notify_undoable(self, message: str, on_undo: UndoCallback) -> None:
        self.messages.append(("undoable", message))
        self.undo_callbacks.append(on_undo)

    def of(self, kind: str) -> List[str]:
        return [message for level, message in self.messages if level == kind]


@pytest.fixture
def clock():
    """Fake monotonic clock."""
    return FakeClock()


@pytest.fixture
def recording_sleep(clock):
    """Retry sleep recording its delays and advancing the fake clock."""
    return RecordingSleep(clock)


@pytest.fixture
def remote():
    """Remote store seeded with a few domains."""
    return FakeRemoteStore(
        {
            "tasks": [
                {"id": "t1", "title": "Write report", "status": "open"},
                {"id": "t2", "title": "Review budget", "status": "open"},
            ],
            "crm": [{"id": "c1", "name": "Acme Corp", "stage": "lead"}],
            "financials": [{"id": "f1", "amount": 1200}],
        }
    )


@pytest.fixture
def sink():
    """Recording notification sink."""
    return RecordingNotificationSink()


@pytest.fixture
def metrics():
    """Metrics collector with an isolated registry."""
    return SyncMetrics()


@pytest.fixture
def settings():
    """Test settings with the default timing policy."""
    return Settings(ENVIRONMENT="test", LOG_LEVEL="DEBUG", AUDIT_LOG_PATH=None)


@pytest.fixture
def audit_store():
    """In-memory audit store."""
    return InMemoryAuditStore()


@pytest.fixture
def session(remote, settings, sink, audit_store, clock, recording_sleep, metrics):
    """Sync session wired with fakes."""
    return SyncSession.from_settings(
        remote,
        settings,
        notifications=sink,
        audit_store=audit_store,
        clock=clock,
        sleep=recording_sleep,
        metrics=metrics,
    )


# Test markers and configuration
def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "cache: marks tests as cache partition tests")
    config.addinivalue_line("markers", "mutation: marks tests as mutation tests")
    config.addinivalue_line("markers", "scenario: marks end-to-end scenario tests")


def pytest_collection_modifyitems(config, items):
    """Add markers based on test file location."""
    for item in items:
        path = str(item.fspath)
        if "cache" in path:
            item.add_marker(pytest.mark.cache)
        if "mutation" in path or "sync_session" in path:
            item.add_marker(pytest.mark.mutation)
