"""
Unit tests for the Mutation Coordinator.

Optimistic apply, retry with backoff, rollback, commit side effects,
per-entity ordering and undo registration.
"""

import asyncio

import pytest

from syncguard.domain.sync.entities import MutationOptions
from syncguard.domain.sync.exceptions import (
    CONFLICT_MESSAGE,
    GENERIC_FAILURE_MESSAGE,
    ConflictError,
    NetworkError,
    OperationTimeoutError,
    ValidationError,
)
from syncguard.domain.sync.records import locate_record, merge_record, remove_record
from syncguard.domain.sync.value_objects import (
    TTL,
    AuditAction,
    ErrorKind,
    MutationKind,
    MutationStatus,
    RetryPolicy,
    UndoOutcome,
)
from syncguard.infrastructure.repositories.audit_repository import InMemoryAuditStore
from syncguard.services.sync.audit_recorder import AuditLogRecorder
from syncguard.services.sync.cache_partitions import CachePartitionManager
from syncguard.services.sync.mutation_coordinator import MutationCoordinator
from syncguard.services.sync.undo_registry import UndoRegistry


def set_title(entity_id, title):
    return lambda payload: merge_record(payload, entity_id, {"title": title})


class Harness:
    """Coordinator wired with fakes."""

    def __init__(self, remote, clock, sleep, sink, metrics, retry_policy=None):
        self.remote = remote
        self.clock = clock
        self.sleep = sleep
        self.sink = sink
        self.metrics = metrics
        self.store = InMemoryAuditStore()
        self.cache = CachePartitionManager(remote.fetch_domain, clock=clock, metrics=metrics)
        self.audit = AuditLogRecorder(self.store, metrics=metrics)
        self.undo = UndoRegistry(clock=clock, metrics=metrics)
        self.coordinator = MutationCoordinator(
            self.cache,
            self.audit,
            self.undo,
            retry_policy=retry_policy or RetryPolicy(),
            notifications=sink,
            remote=remote,
            sleep=sleep,
            metrics=metrics,
        )

    def record(self, domain, entity_id):
        return locate_record(self.cache.peek(domain), entity_id)

    async def update(self, entity_id, title, remote_fn=None, **options):
        payload = {"id": entity_id, "title": title}
        if remote_fn is None:

            async def remote_fn():
                return await self.remote.write_entity("tasks", MutationKind.UPDATE, payload)

        return await self.coordinator.submit(
            "tasks",
            MutationKind.UPDATE,
            payload,
            set_title(entity_id, title),
            remote_fn,
            MutationOptions(**options),
        )

    async def delete(self, domain, entity_id, **options):
        record = self.record(domain, entity_id)
        return await self.coordinator.submit(
            domain,
            MutationKind.DELETE,
            record,
            lambda payload: remove_record(payload, entity_id),
            lambda: self.remote.write_entity(domain, MutationKind.DELETE, {"id": entity_id}),
            MutationOptions(**options),
        )


@pytest.fixture
def harness(remote, clock, recording_sleep, sink, metrics):
    return Harness(remote, clock, recording_sleep, sink, metrics)


class TestCommit:
    """Test successful mutations."""

    @pytest.mark.asyncio
    async def test_optimistic_patch_visible_before_write(self, harness):
        """Test the cache shows the change before the remote call completes."""
        await harness.cache.get("tasks")
        gate = asyncio.Event()
        seen = []

        async def remote_fn():
            seen.append(harness.record("tasks", "t1")["title"])
            await gate.wait()
            return {"id": "t1", "title": "Renamed"}

        pending = asyncio.ensure_future(harness.update("t1", "Renamed", remote_fn=remote_fn))
        await asyncio.sleep(0.01)

        assert seen == ["Renamed"]
        assert harness.coordinator.has_pending("tasks", "t1")

        gate.set()
        outcome = await pending
        assert outcome.ok
        assert not harness.coordinator.has_pending("tasks")

    @pytest.mark.asyncio
    async def test_commit_side_effects(self, harness):
        """Test one audit record and one invalidation per commit."""
        await harness.cache.get("tasks")

        outcome = await harness.update("t1", "Renamed", actor_id="u-42")

        assert outcome.status is MutationStatus.COMMITTED
        assert outcome.attempts == 1
        assert outcome.result == {"id": "t1", "title": "Renamed", "status": "open"}
        assert not outcome.undo_available
        assert not harness.cache.is_fresh("tasks")

        records = await harness.audit.query()
        assert len(records) == 1
        record = records[0]
        assert record.action is AuditAction.UPDATE
        assert record.entity_type == "tasks"
        assert record.entity_id == "t1"
        assert record.actor_id == "u-42"
        assert record.old_value == {"id": "t1", "title": "Write report", "status": "open"}
        assert record.new_value == outcome.result
        assert record.mutation_id == outcome.mutation_id

        assert harness.sink.of("success") == ["Update tasks t1 saved"]
        assert harness.metrics.sample(
            "syncguard_mutations_total", domain="tasks", kind="update", status="committed"
        ) == 1.0

    @pytest.mark.asyncio
    async def test_reconcile_with_server_result(self, harness):
        """Test reconcile_fn replaces the optimistic payload."""
        await harness.cache.get("tasks")

        await harness.update(
            "t1",
            "Renamed",
            reconcile_fn=lambda payload, result: merge_record(
                payload, "t1", {"title": result["title"].upper()}
            ),
        )

        assert harness.record("tasks", "t1")["title"] == "RENAMED"

    @pytest.mark.asyncio
    async def test_commit_without_cached_data(self, harness):
        """Test mutations on a domain never fetched still commit."""
        outcome = await harness.update("t1", "Renamed")

        assert outcome.ok
        assert len(await harness.audit.query()) == 1

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_roll_back(self, harness, monkeypatch):
        """Test audit is best effort."""
        await harness.cache.get("tasks")

        async def broken_append(record):
            raise OSError("disk full")

        monkeypatch.setattr(harness.store, "append", broken_append)

        outcome = await harness.update("t1", "Renamed")

        assert outcome.ok
        assert harness.record("tasks", "t1")["title"] == "Renamed"
        assert harness.metrics.sample("syncguard_audit_write_failures_total") == 1.0


class TestRetry:
    """Test transient failure handling."""

    @pytest.mark.asyncio
    @pytest.mark.scenario
    async def test_two_transient_failures_then_success(self, harness, remote):
        """Test update retried with 1000ms then 2000ms backoff."""
        await harness.cache.get("tasks")
        remote.write_failures = [NetworkError("offline"), OperationTimeoutError("slow", 10)]

        visible = []
        harness.sleep.on_sleep = lambda delay: visible.append(
            harness.record("tasks", "t1")["title"]
        )

        outcome = await harness.update("t1", "done")

        assert outcome.ok
        assert outcome.attempts == 3
        assert harness.sleep.delays == [1.0, 2.0]
        assert harness.sleep.total >= 3.0
        assert visible == ["done", "done"]
        assert len(remote.write_calls) == 3

        records = await harness.audit.query()
        assert len(records) == 1
        assert records[0].new_value["title"] == "done"

        pending = harness.sink.of("pending")
        assert pending[1:] == [
            "Retrying Update tasks t1 (attempt 2 of 3)",
            "Retrying Update tasks t1 (attempt 3 of 3)",
        ]
        assert harness.metrics.sample(
            "syncguard_mutation_retries_total", domain="tasks", kind="update"
        ) == 2.0

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, harness, remote):
        """Test rollback after create/update retries run out."""
        before = await harness.cache.get("tasks")
        remote.write_failures = [NetworkError("offline")] * 3

        outcome = await harness.update("t1", "Renamed")

        assert outcome.status is MutationStatus.FAILED
        assert outcome.error_kind is ErrorKind.NETWORK
        assert outcome.attempts == 3
        assert harness.sleep.delays == [1.0, 2.0]
        assert harness.cache.peek("tasks") == before
        assert await harness.audit.query() == []
        assert harness.sink.of("error") == ["Could not reach the server: offline"]

    @pytest.mark.asyncio
    async def test_delete_retried_once(self, harness, remote):
        """Test delete retry bound."""
        before = await harness.cache.get("crm")
        remote.write_failures = [NetworkError("offline")] * 2

        outcome = await harness.delete("crm", "c1")

        assert outcome.status is MutationStatus.FAILED
        assert outcome.attempts == 2
        assert harness.sleep.delays == [1.0]
        assert harness.cache.peek("crm") == before
        assert len(harness.undo) == 0

    @pytest.mark.asyncio
    async def test_retry_after_hint(self, harness, remote):
        """Test server retry hints drive the delay."""
        await harness.cache.get("tasks")
        remote.write_failures = [NetworkError("busy", status_code=429, retry_after=0.25)]

        outcome = await harness.update("t1", "Renamed")

        assert outcome.ok
        assert harness.sleep.delays == [0.25]


class TestRollback:
    """Test permanent failure handling."""

    @pytest.mark.asyncio
    async def test_conflict_rolls_back(self, harness, remote):
        """Test conflicts are not retried and surface a manual refresh message."""
        before = await harness.cache.get("tasks")
        remote.write_failures = [ConflictError(entity_id="t1")]

        outcome = await harness.update("t1", "Renamed")

        assert outcome.status is MutationStatus.ROLLED_BACK
        assert outcome.error_kind is ErrorKind.CONFLICT
        assert outcome.message == CONFLICT_MESSAGE
        assert len(remote.write_calls) == 1
        assert harness.sleep.delays == []
        assert harness.cache.peek("tasks") == before
        assert await harness.audit.query() == []
        assert harness.sink.of("error") == [CONFLICT_MESSAGE]

    @pytest.mark.asyncio
    async def test_validation_message_verbatim(self, harness, remote):
        """Test validation errors surface their own message."""
        await harness.cache.get("tasks")
        remote.write_failures = [ValidationError("Title is too long")]

        outcome = await harness.update("t1", "x" * 500)

        assert outcome.message == "Title is too long"
        with pytest.raises(ValidationError):
            outcome.raise_for_error()

    @pytest.mark.asyncio
    async def test_unclassified_error_is_fatal(self, harness):
        """Test unexpected errors get a generic message."""
        before = await harness.cache.get("tasks")

        async def remote_fn():
            raise KeyError("internal detail")

        outcome = await harness.update("t1", "Renamed", remote_fn=remote_fn)

        assert outcome.status is MutationStatus.ROLLED_BACK
        assert outcome.error_kind is ErrorKind.FATAL
        assert outcome.message == GENERIC_FAILURE_MESSAGE
        assert harness.cache.peek("tasks") == before

    @pytest.mark.asyncio
    async def test_failing_apply_fn(self, harness, remote):
        """Test a broken optimistic patch never reaches the remote."""
        before = await harness.cache.get("tasks")

        def broken(payload):
            raise RuntimeError("bad patch")

        outcome = await harness.coordinator.submit(
            "tasks",
            MutationKind.UPDATE,
            {"id": "t1"},
            broken,
            lambda: remote.write_entity("tasks", MutationKind.UPDATE, {"id": "t1"}),
        )

        assert outcome.status is MutationStatus.ROLLED_BACK
        assert outcome.error_kind is ErrorKind.FATAL
        assert remote.write_calls == []
        assert harness.cache.peek("tasks") == before

    @pytest.mark.asyncio
    async def test_rollback_replays_later_patches(self, harness):
        """Test rolling back one entity keeps a later patch on another."""
        await harness.cache.get("tasks")
        first_gate, second_gate = asyncio.Event(), asyncio.Event()

        async def failing_write():
            await first_gate.wait()
            raise ValidationError("rejected")

        async def slow_write():
            await second_gate.wait()
            return {"id": "t2", "title": "Second"}

        first = asyncio.ensure_future(harness.update("t1", "First", remote_fn=failing_write))
        second = asyncio.ensure_future(harness.update("t2", "Second", remote_fn=slow_write))
        await asyncio.sleep(0.01)

        first_gate.set()
        assert not (await first).ok

        assert harness.record("tasks", "t1")["title"] == "Write report"
        assert harness.record("tasks", "t2")["title"] == "Second"

        second_gate.set()
        assert (await second).ok

    @pytest.mark.asyncio
    async def test_rollback_keeps_committed_sibling(self, harness):
        """Test rolling back one entity keeps a later sibling that already committed."""
        await harness.cache.get("tasks")
        gate = asyncio.Event()

        async def conflicting_write():
            await gate.wait()
            raise ConflictError(entity_id="t1")

        first = asyncio.ensure_future(
            harness.update("t1", "First", remote_fn=conflicting_write)
        )
        await asyncio.sleep(0.01)

        second = await harness.update(
            "t2",
            "Second",
            reconcile_fn=lambda payload, result: merge_record(
                payload, "t2", {"title": result["title"].upper()}
            ),
        )
        assert second.ok
        assert harness.record("tasks", "t2")["title"] == "SECOND"

        gate.set()
        outcome = await first

        assert outcome.status is MutationStatus.ROLLED_BACK
        assert harness.record("tasks", "t1")["title"] == "Write report"
        assert harness.record("tasks", "t2")["title"] == "SECOND"
        assert harness.coordinator._patch_logs == {}

    @pytest.mark.asyncio
    async def test_rollback_after_refresh_keeps_fetched_payload(self, harness):
        """Test an authoritative fetch between apply and failure wins."""
        await harness.cache.get("tasks")
        gate = asyncio.Event()

        async def rejected_write():
            await gate.wait()
            raise ValidationError("rejected")

        first = asyncio.ensure_future(
            harness.update("t1", "First", remote_fn=rejected_write)
        )
        await asyncio.sleep(0.01)

        assert (await harness.update("t2", "Second")).ok
        fetched = await harness.cache.get("tasks")

        gate.set()
        assert not (await first).ok

        assert harness.cache.peek("tasks") == fetched
        assert harness.record("tasks", "t2")["title"] == "Second"

    @pytest.mark.asyncio
    async def test_cancellation_rolls_back(self, harness):
        """Test a cancelled submit reverts its patch and re-raises."""
        before = await harness.cache.get("tasks")
        gate = asyncio.Event()

        async def remote_fn():
            await gate.wait()

        pending = asyncio.ensure_future(harness.update("t1", "Renamed", remote_fn=remote_fn))
        await asyncio.sleep(0.01)
        pending.cancel()

        with pytest.raises(asyncio.CancelledError):
            await pending

        assert harness.cache.peek("tasks") == before
        assert not harness.coordinator.has_pending("tasks")
        gate.set()


class TestOrdering:
    """Test per-entity serialization."""

    @pytest.mark.asyncio
    async def test_same_entity_mutations_apply_in_order(self, harness):
        """Test the second mutation waits for the first to finish."""
        await harness.cache.get("tasks")
        gate = asyncio.Event()
        events = []
        observed = []

        async def first_write():
            events.append("first-start")
            await gate.wait()
            events.append("first-end")
            return {"id": "t1", "title": "First"}

        async def second_write():
            events.append("second")
            return {"id": "t1", "title": "Second"}

        def second_apply(payload):
            observed.append(locate_record(payload, "t1")["title"])
            return merge_record(payload, "t1", {"title": "Second"})

        first = asyncio.ensure_future(harness.update("t1", "First", remote_fn=first_write))
        await asyncio.sleep(0.01)
        second = asyncio.ensure_future(
            harness.coordinator.submit(
                "tasks",
                MutationKind.UPDATE,
                {"id": "t1", "title": "Second"},
                second_apply,
                second_write,
            )
        )
        await asyncio.sleep(0.01)

        assert events == ["first-start"]
        assert observed == []

        gate.set()
        await asyncio.gather(first, second)

        assert events == ["first-start", "first-end", "second"]
        assert observed == ["First"]

        records = await harness.audit.query(entity_id="t1")
        assert [r.new_value["title"] for r in records] == ["Second", "First"]

    @pytest.mark.asyncio
    async def test_different_entities_run_concurrently(self, harness):
        """Test serialization is per entity, not per domain."""
        await harness.cache.get("tasks")
        gate = asyncio.Event()
        started = []

        async def blocked_write():
            started.append("t1")
            await gate.wait()
            return {"id": "t1"}

        async def quick_write():
            started.append("t2")
            return {"id": "t2"}

        first = asyncio.ensure_future(harness.update("t1", "A", remote_fn=blocked_write))
        second = asyncio.ensure_future(harness.update("t2", "B", remote_fn=quick_write))
        await asyncio.sleep(0.01)

        assert started == ["t1", "t2"]
        assert second.done()

        gate.set()
        await first

    @pytest.mark.asyncio
    async def test_waiter_cancelled_keeps_order(self, harness):
        """Test cancelling a queued mutation does not let a third jump ahead."""
        await harness.cache.get("tasks")
        gate = asyncio.Event()
        events = []

        async def first_write():
            await gate.wait()
            events.append("first")
            return {"id": "t1"}

        async def third_write():
            events.append("third")
            return {"id": "t1"}

        first = asyncio.ensure_future(harness.update("t1", "A", remote_fn=first_write))
        await asyncio.sleep(0.01)
        second = asyncio.ensure_future(harness.update("t1", "B"))
        await asyncio.sleep(0.01)
        third = asyncio.ensure_future(harness.update("t1", "C", remote_fn=third_write))
        await asyncio.sleep(0.01)

        second.cancel()
        await asyncio.sleep(0.01)
        assert events == []

        gate.set()
        await asyncio.gather(first, third)
        assert events == ["first", "third"]


class TestUndo:
    """Test undo registration for destructive mutations."""

    @pytest.mark.asyncio
    @pytest.mark.scenario
    async def test_delete_undo_within_window(self, harness, remote, clock):
        """Test consuming at 4 seconds restores the item with a new id."""
        await harness.cache.get("crm")

        outcome = await harness.delete("crm", "c1")

        assert outcome.ok
        assert outcome.undo_available
        assert harness.record("crm", "c1") is None
        assert harness.undo.is_available(outcome.mutation_id)
        assert harness.sink.of("undoable") == ["Delete crm c1 done"]

        clock.advance(4)
        result = await harness.sink.undo_callbacks[0]()

        assert result.outcome is UndoOutcome.RESTORED
        domain, kind, payload = remote.write_calls[-1]
        assert (domain, kind) == ("crm", MutationKind.CREATE)
        assert payload == {"name": "Acme Corp", "stage": "lead"}
        assert result.result["id"] != "c1"

        records = await harness.audit.query()
        assert [r.action for r in records] == [AuditAction.RESTORE, AuditAction.DELETE]
        assert records[0].entity_id == result.result["id"]
        assert records[1].old_value == {"id": "c1", "name": "Acme Corp", "stage": "lead"}
        assert not harness.cache.is_fresh("crm")

        again = await harness.undo.consume(outcome.mutation_id)
        assert again.outcome is UndoOutcome.ALREADY_HANDLED

    @pytest.mark.asyncio
    @pytest.mark.scenario
    async def test_delete_undo_after_window(self, harness, remote, clock):
        """Test consuming at 6 seconds reports already handled."""
        await harness.cache.get("crm")
        outcome = await harness.delete("crm", "c1")
        writes = len(remote.write_calls)

        clock.advance(6)
        result = await harness.undo.consume(outcome.mutation_id)

        assert result.outcome is UndoOutcome.ALREADY_HANDLED
        assert len(remote.write_calls) == writes
        assert [r.action for r in await harness.audit.query()] == [AuditAction.DELETE]

    @pytest.mark.asyncio
    async def test_custom_undo_ttl_and_restore_fn(self, harness):
        """Test per-mutation undo options."""
        await harness.cache.get("crm")
        restored = []

        async def restore_fn(record):
            restored.append(record)
            return {"id": "c9", **record}

        outcome = await harness.delete("crm", "c1", undo_ttl=TTL(30), restore_fn=restore_fn)

        assert harness.undo.remaining(outcome.mutation_id) == 30.0
        result = await harness.undo.consume(outcome.mutation_id)
        assert result.restored
        assert restored == [{"name": "Acme Corp", "stage": "lead"}]

    @pytest.mark.asyncio
    async def test_update_not_undoable_by_default(self, harness):
        """Test only destructive mutations register tokens."""
        await harness.cache.get("tasks")
        outcome = await harness.update("t1", "Renamed")

        assert not outcome.undo_available
        assert len(harness.undo) == 0
