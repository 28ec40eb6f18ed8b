"""
Mutation Coordinator

Central orchestrator for entity writes. A submitted mutation is applied to
the cache optimistically, written remotely under a deadline with bounded
retries for transient failures, and then either committed (invalidate,
audit, optional undo) or rolled back to its pre-apply snapshot.

Mutations on the same entity are serialized in submission order.
"""

import asyncio
import itertools
from functools import partial
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Tuple, Union
from uuid import UUID

import structlog
from opentelemetry import trace
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)

from ...constants import DEFAULT_ACTOR_ID
from ...core.timeout import run_with_timeout
from ...domain.sync.entities import (
    AuditRecord,
    MutationOptions,
    MutationOutcome,
    PatchFn,
    PendingMutation,
    RemoteFn,
    RestoreAction,
)
from ...domain.sync.exceptions import (
    FatalError,
    classify_error,
    is_transient,
    user_message,
)
from ...domain.sync.records import extract_entity_id, locate_record, strip_identity
from ...domain.sync.repository_interfaces import NotificationSink, RemoteStore
from ...domain.sync.value_objects import (
    TTL,
    AuditAction,
    DomainKey,
    ErrorKind,
    MutationKind,
    MutationStatus,
    RetryPolicy,
)
from ...monitoring.metrics import SyncMetrics
from .audit_recorder import AuditLogRecorder
from .cache_partitions import CachePartitionManager
from .undo_registry import UndoRegistry

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)


class AppliedPatch(NamedTuple):
    """One cache transform applied on behalf of a mutation."""

    order: int
    mutation: PendingMutation
    patch_fn: PatchFn
    cache_version: Optional[int]


class MutationCoordinator:
    """
    Applies, retries, commits and rolls back entity mutations.

    The coordinator exclusively owns the pending-mutation map. It touches
    the cache only through the partition manager's patch primitives.
    """

    def __init__(
        self,
        cache: CachePartitionManager,
        audit: AuditLogRecorder,
        undo: Optional[UndoRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
        write_timeout_seconds: float = 10.0,
        undo_ttl: Optional[TTL] = None,
        notifications: Optional[NotificationSink] = None,
        remote: Optional[RemoteStore] = None,
        default_actor_id: str = DEFAULT_ACTOR_ID,
        sleep=asyncio.sleep,
        metrics: Optional[SyncMetrics] = None,
    ):
        if write_timeout_seconds <= 0:
            raise ValueError("write_timeout_seconds must be positive")

        self._cache = cache
        self._audit = audit
        self._undo = undo
        self._retry_policy = retry_policy or RetryPolicy()
        self._write_timeout_seconds = write_timeout_seconds
        self._undo_ttl = undo_ttl
        self._notifications = notifications
        self._remote = remote
        self._default_actor_id = default_actor_id
        self._sleep = sleep
        self._metrics = metrics

        self._pending: Dict[UUID, PendingMutation] = {}
        self._entity_tails: Dict[str, "asyncio.Future[None]"] = {}
        self._patch_logs: Dict[str, List[AppliedPatch]] = {}
        self._counter = itertools.count(1)

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def pending(self) -> List[PendingMutation]:
        """Mutations that have not reached a terminal status, oldest first."""
        return sorted(self._pending.values(), key=lambda m: m.sequence)

    def has_pending(self, domain: str, entity_id: Optional[str] = None) -> bool:
        """Check for in-flight mutations on a domain or one of its entities."""
        return any(
            m.domain == domain and (entity_id is None or m.entity_id == entity_id)
            for m in self._pending.values()
        )

    async def submit(
        self,
        domain: Union[str, DomainKey],
        kind: Union[str, MutationKind],
        payload: Any,
        apply_fn: PatchFn,
        remote_fn: RemoteFn,
        options: Optional[MutationOptions] = None,
    ) -> MutationOutcome:
        """
        Submit one mutation and wait for its terminal outcome.

        Args:
            domain: Cache partition the mutation touches
            kind: create, update or delete
            payload: Entity payload (used for the id and undo restore)
            apply_fn: Optimistic transformation of the cached payload
            remote_fn: Zero-argument coroutine function performing the write
            options: Per-mutation settings

        Returns:
            Structured outcome; failures are reported, not raised
        """
        options = options or MutationOptions()
        key = DomainKey.of(domain).value
        kind = MutationKind(kind)
        entity_id = options.entity_id or extract_entity_id(payload, options.id_field)

        mutation = PendingMutation(
            domain=key,
            kind=kind,
            payload=payload,
            apply_fn=apply_fn,
            entity_id=str(entity_id) if entity_id is not None else None,
            sequence=next(self._counter),
        )
        description = options.description or self._describe(mutation, options)

        self._pending[mutation.id] = mutation
        predecessor, gate = self._acquire(mutation.serialization_key)
        try:
            if predecessor is not None:
                logger.debug(
                    "mutation_waiting_for_entity",
                    mutation_id=str(mutation.id),
                    entity=mutation.serialization_key,
                )
                await asyncio.shield(predecessor)

            return await self._execute(mutation, remote_fn, options, description)
        finally:
            self._pending.pop(mutation.id, None)
            self._release(mutation.serialization_key, predecessor, gate)

    # Execution

    async def _execute(
        self,
        mutation: PendingMutation,
        remote_fn: RemoteFn,
        options: MutationOptions,
        description: str,
    ) -> MutationOutcome:
        with tracer.start_as_current_span("mutation.submit") as span:
            span.set_attribute("domain", mutation.domain)
            span.set_attribute("kind", mutation.kind.value)
            span.set_attribute("mutation_id", str(mutation.id))

            self._notify("notify_pending", f"{description}...")

            mutation.snapshot_before_apply = self._cache.peek(mutation.domain)
            mutation.cache_version = self._cache.version(mutation.domain)
            try:
                mutation.patch_applied = self._cache.apply_optimistic_patch(
                    mutation.domain, mutation.apply_fn
                )
            except Exception as e:
                error = FatalError(
                    f"Optimistic update of '{mutation.domain}' failed", original_error=e
                )
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(error)))
                return self._fail(mutation, error, description)

            if mutation.patch_applied:
                mutation.applied_order = self._log_patch(mutation, mutation.apply_fn)

            try:
                result = await self._write_with_retry(
                    mutation, remote_fn, options, description
                )
            except asyncio.CancelledError:
                self._terminate_unsuccessful(mutation, transient=False)
                self._rollback(mutation)
                logger.info("mutation_cancelled", mutation_id=str(mutation.id))
                raise
            except Exception as e:
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                return self._fail(mutation, e, description)

            span.set_attribute("attempts", mutation.attempts)
            return await self._commit(mutation, result, options, description)

    async def _write_with_retry(
        self,
        mutation: PendingMutation,
        remote_fn: RemoteFn,
        options: MutationOptions,
        description: str,
    ) -> Any:
        max_attempts = self._retry_policy.max_attempts(mutation.kind)
        timeout = options.timeout_seconds or self._write_timeout_seconds

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=self._backoff,
            retry=retry_if_exception(is_transient),
            before_sleep=partial(self._before_retry, mutation, description, max_attempts),
            sleep=self._sleep,
            reraise=True,
        )

        result = None
        async for attempt in retrying:
            with attempt:
                if mutation.status is MutationStatus.RETRYING:
                    mutation.transition(MutationStatus.APPLYING)
                mutation.attempts = attempt.retry_state.attempt_number
                result = await self._attempt(mutation, remote_fn, timeout, description)
        return result

    async def _attempt(
        self,
        mutation: PendingMutation,
        remote_fn: RemoteFn,
        timeout: float,
        description: str,
    ) -> Any:
        with tracer.start_as_current_span("mutation.attempt") as span:
            span.set_attribute("attempt", mutation.attempts)
            try:
                return await run_with_timeout(
                    remote_fn, timeout, f"{description} exceeded {timeout:g}s"
                )
            except Exception as e:
                mutation.last_error = e
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                raise

    def _backoff(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        return self._retry_policy.delay_for(
            retry_state.attempt_number - 1,
            retry_after=getattr(error, "retry_after", None),
        )

    def _before_retry(
        self,
        mutation: PendingMutation,
        description: str,
        max_attempts: int,
        retry_state: RetryCallState,
    ) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0

        mutation.retry_count += 1
        mutation.transition(MutationStatus.RETRYING)
        if self._metrics:
            self._metrics.record_retry(mutation.domain, mutation.kind.value)

        logger.warning(
            "mutation_retry_scheduled",
            mutation_id=str(mutation.id),
            domain=mutation.domain,
            retry=mutation.retry_count,
            delay_seconds=delay,
            error_kind=classify_error(error).value if error else None,
            error=str(error) if error else None,
        )
        self._notify(
            "notify_pending",
            f"Retrying {description} "
            f"(attempt {retry_state.attempt_number + 1} of {max_attempts})",
        )

    # Terminal states

    async def _commit(
        self,
        mutation: PendingMutation,
        result: Any,
        options: MutationOptions,
        description: str,
    ) -> MutationOutcome:
        mutation.transition(MutationStatus.COMMITTED)
        mutation.patch_applied = False

        if options.reconcile_fn is not None and result is not None:

            def reconcile(current: Any) -> Any:
                return options.reconcile_fn(current, result)

            try:
                if self._cache.apply_optimistic_patch(mutation.domain, reconcile):
                    self._log_patch(mutation, reconcile)
            except Exception as e:
                logger.warning(
                    "mutation_reconcile_failed",
                    mutation_id=str(mutation.id),
                    error_type=type(e).__name__,
                    error=str(e),
                )

        self._cache.invalidate(mutation.domain)
        self._trim_patch_log(mutation.domain)

        entity_id = mutation.entity_id or extract_entity_id(result, options.id_field)
        old_value = self._previous_value(mutation, options.id_field)
        await self._audit.record(
            AuditRecord(
                entity_type=options.entity_type or mutation.domain,
                entity_id=entity_id,
                action=AuditAction.for_mutation(mutation.kind),
                old_value=old_value,
                new_value=result,
                actor_id=options.actor_id or self._default_actor_id,
                mutation_id=mutation.id,
            )
        )

        undo_available = self._offer_undo(
            mutation, old_value, entity_id, options, description
        )
        if not undo_available:
            self._notify("notify_success", f"{description} saved")

        if self._metrics:
            self._metrics.record_mutation(
                mutation.domain, mutation.kind.value, mutation.status.value
            )
        logger.info(
            "mutation_committed",
            mutation_id=str(mutation.id),
            domain=mutation.domain,
            kind=mutation.kind.value,
            entity_id=entity_id,
            attempts=mutation.attempts,
            undo_available=undo_available,
        )

        return MutationOutcome(
            mutation_id=mutation.id,
            domain=mutation.domain,
            kind=mutation.kind,
            status=mutation.status,
            entity_id=entity_id,
            result=result,
            attempts=mutation.attempts,
            undo_available=undo_available,
        )

    def _fail(
        self, mutation: PendingMutation, error: Exception, description: str
    ) -> MutationOutcome:
        transient = is_transient(error)
        mutation.last_error = error
        self._terminate_unsuccessful(mutation, transient)
        self._rollback(mutation)

        error_kind = classify_error(error)
        message = user_message(error)
        log_fields = dict(
            mutation_id=str(mutation.id),
            domain=mutation.domain,
            kind=mutation.kind.value,
            status=mutation.status.value,
            error_kind=error_kind.value,
            attempts=mutation.attempts,
            error=str(error),
        )
        if error_kind is ErrorKind.FATAL:
            logger.error("mutation_failed", exc_info=error, **log_fields)
        else:
            logger.warning("mutation_failed", **log_fields)

        self._notify("notify_error", message)
        if self._metrics:
            self._metrics.record_mutation(
                mutation.domain, mutation.kind.value, mutation.status.value
            )

        return MutationOutcome(
            mutation_id=mutation.id,
            domain=mutation.domain,
            kind=mutation.kind,
            status=mutation.status,
            entity_id=mutation.entity_id,
            error_kind=error_kind,
            message=message,
            attempts=mutation.attempts,
            error=error,
        )

    @staticmethod
    def _terminate_unsuccessful(mutation: PendingMutation, transient: bool) -> None:
        if mutation.status is MutationStatus.RETRYING:
            mutation.transition(MutationStatus.FAILED)
        elif transient:
            # Retries exhausted
            mutation.transition(MutationStatus.RETRYING)
            mutation.transition(MutationStatus.FAILED)
        else:
            mutation.transition(MutationStatus.ROLLED_BACK)

    def _rollback(self, mutation: PendingMutation) -> None:
        """
        Revert an optimistic patch.

        The domain is rebuilt from the mutation's snapshot by replaying, in
        order, every later patch still logged for the domain. Both pending
        and already committed mutations are replayed, so only the failed
        change disappears from the cache.
        """
        if not mutation.patch_applied:
            return
        mutation.patch_applied = False

        reverted = self._cache.revert_optimistic_patch(
            mutation.domain,
            mutation.snapshot_before_apply,
            expected_version=mutation.cache_version,
        )
        replayed = self._replay_after(mutation) if reverted else 0
        self._trim_patch_log(mutation.domain)

        logger.debug(
            "mutation_rolled_back",
            mutation_id=str(mutation.id),
            domain=mutation.domain,
            reverted=reverted,
            replayed=replayed,
        )

    # Patch log

    def _log_patch(self, mutation: PendingMutation, patch_fn: PatchFn) -> int:
        order = next(self._counter)
        self._patch_logs.setdefault(mutation.domain, []).append(
            AppliedPatch(order, mutation, patch_fn, self._cache.version(mutation.domain))
        )
        return order

    def _replay_after(self, mutation: PendingMutation) -> int:
        domain = mutation.domain
        kept: List[AppliedPatch] = []
        replayed = 0

        for patch in self._patch_logs.get(domain, []):
            if patch.mutation is mutation:
                continue
            if patch.order < mutation.applied_order:
                kept.append(patch)
                continue

            other = patch.mutation
            applies_pending = other.patch_applied and patch.order == other.applied_order
            if applies_pending:
                other.snapshot_before_apply = self._cache.peek(domain)
            try:
                self._cache.apply_optimistic_patch(domain, patch.patch_fn)
            except Exception as e:
                if applies_pending:
                    other.patch_applied = False
                logger.warning(
                    "optimistic_replay_failed",
                    mutation_id=str(other.id),
                    status=other.status.value,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                continue
            kept.append(patch)
            replayed += 1

        self._patch_logs[domain] = kept
        return replayed

    def _trim_patch_log(self, domain: str) -> None:
        """Forget patches no pending mutation can roll back past."""
        log = self._patch_logs.get(domain)
        if log is None:
            return

        floor = min(
            (
                m.applied_order
                for m in self._pending.values()
                if m.domain == domain and m.patch_applied
            ),
            default=None,
        )
        if floor is None:
            del self._patch_logs[domain]
            return

        # Patches made before the last authoritative fetch are already gone.
        version = self._cache.version(domain)
        self._patch_logs[domain] = [
            patch
            for patch in log
            if patch.order >= floor and patch.cache_version == version
        ]

    # Undo

    def _offer_undo(
        self,
        mutation: PendingMutation,
        old_value: Any,
        entity_id: Optional[str],
        options: MutationOptions,
        description: str,
    ) -> bool:
        undoable = (
            options.undoable
            if options.undoable is not None
            else mutation.kind.is_destructive
        )
        if not undoable or self._undo is None:
            return False

        record = old_value if isinstance(old_value, Mapping) else mutation.payload
        if not isinstance(record, Mapping):
            logger.warning(
                "undo_unavailable",
                mutation_id=str(mutation.id),
                reason="no_record_snapshot",
            )
            return False
        if options.restore_fn is None and self._remote is None:
            logger.warning(
                "undo_unavailable",
                mutation_id=str(mutation.id),
                reason="no_restore_target",
            )
            return False

        restore = self._restore_action(mutation, record, entity_id, options, description)
        self._undo.register(
            mutation.id,
            restore,
            ttl=options.undo_ttl or self._undo_ttl,
            description=description,
        )
        self._notify(
            "notify_undoable",
            f"{description} done",
            partial(self._undo.consume, mutation.id),
        )
        return True

    def _restore_action(
        self,
        mutation: PendingMutation,
        record: Mapping[str, Any],
        entity_id: Optional[str],
        options: MutationOptions,
        description: str,
    ) -> RestoreAction:
        domain = mutation.domain
        entity_type = options.entity_type or domain
        actor_id = options.actor_id or self._default_actor_id
        timeout = options.timeout_seconds or self._write_timeout_seconds
        fresh = strip_identity(record, options.id_field)

        async def restore() -> Any:
            if options.restore_fn is not None:
                operation = partial(options.restore_fn, fresh)
            else:
                operation = partial(
                    self._remote.write_entity, domain, MutationKind.CREATE, fresh
                )

            result = await run_with_timeout(
                operation, timeout, f"Restoring {entity_type} exceeded {timeout:g}s"
            )

            self._cache.invalidate(domain)
            await self._audit.record(
                AuditRecord(
                    entity_type=entity_type,
                    entity_id=extract_entity_id(result, options.id_field),
                    action=AuditAction.RESTORE,
                    old_value=None,
                    new_value=result,
                    actor_id=actor_id,
                    mutation_id=mutation.id,
                )
            )
            logger.info(
                "mutation_restored",
                mutation_id=str(mutation.id),
                domain=domain,
                deleted_entity_id=entity_id,
            )
            self._notify("notify_success", f"{description} undone")
            return result

        return restore

    # Helpers

    def _acquire(
        self, key: Optional[str]
    ) -> Tuple[Optional["asyncio.Future[None]"], Optional["asyncio.Future[None]"]]:
        if key is None:
            return None, None
        predecessor = self._entity_tails.get(key)
        gate: "asyncio.Future[None]" = asyncio.get_running_loop().create_future()
        self._entity_tails[key] = gate
        return predecessor, gate

    def _release(
        self,
        key: Optional[str],
        predecessor: Optional["asyncio.Future[None]"],
        gate: Optional["asyncio.Future[None]"],
    ) -> None:
        if key is None or gate is None:
            return

        def open_gate(_: Any = None) -> None:
            if not gate.done():
                gate.set_result(None)
            if self._entity_tails.get(key) is gate:
                del self._entity_tails[key]

        if predecessor is not None and not predecessor.done():
            # Cancelled while waiting; successors still wait for the predecessor.
            predecessor.add_done_callback(open_gate)
        else:
            open_gate()

    def _previous_value(self, mutation: PendingMutation, id_field: str) -> Any:
        if mutation.kind is MutationKind.CREATE:
            return None
        snapshot = mutation.snapshot_before_apply
        record = locate_record(snapshot, mutation.entity_id, id_field)
        return record if record is not None else snapshot

    @staticmethod
    def _describe(mutation: PendingMutation, options: MutationOptions) -> str:
        subject = options.entity_type or mutation.domain
        if mutation.entity_id is not None:
            subject = f"{subject} {mutation.entity_id}"
        return f"{mutation.kind.value.capitalize()} {subject}"

    def _notify(self, method: str, *args: Any) -> None:
        if self._notifications is None:
            return
        try:
            getattr(self._notifications, method)(*args)
        except Exception as e:
            logger.warning(
                "notification_failed",
                method=method,
                error_type=type(e).__name__,
                error=str(e),
            )
