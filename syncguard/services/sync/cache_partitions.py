"""
Cache Partition Manager

Serves domain-partitioned data with a per-domain freshness window.
Concurrent reads of a stale or absent domain share one fetch, and a failed
fetch leaves the last known payload in place.

The manager knows nothing about mutations: it only exposes optimistic
patch and revert primitives.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

import structlog
from opentelemetry import trace

from ...core.timeout import run_with_timeout
from ...domain.sync.entities import CacheEntry, PatchFn
from ...domain.sync.value_objects import TTL, CacheLookup, DomainKey
from ...monitoring.metrics import SyncMetrics

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)

Fetcher = Callable[[str], Awaitable[Any]]
Clock = Callable[[], float]


class CachePartitionManager:
    """
    Owns one cache entry per logical domain.

    Entries are created on first request, replaced wholesale by each
    successful fetch and marked stale by expiry or invalidation.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        default_ttl: Optional[TTL] = None,
        domain_ttls: Optional[Mapping[str, TTL]] = None,
        fetch_timeout_seconds: float = 10.0,
        clock: Clock = time.monotonic,
        metrics: Optional[SyncMetrics] = None,
    ):
        self._fetcher = fetcher
        self._default_ttl = default_ttl or TTL.default_partition()
        self._domain_ttls: Dict[str, TTL] = dict(domain_ttls or {})
        self._fetch_timeout_seconds = fetch_timeout_seconds
        self._clock = clock
        self._metrics = metrics
        self._entries: Dict[str, CacheEntry] = {}

    # Configuration

    def ttl_for(self, domain: Union[str, DomainKey]) -> TTL:
        """Freshness window of a domain."""
        return self._domain_ttls.get(DomainKey.of(domain).value, self._default_ttl)

    def set_ttl(self, domain: Union[str, DomainKey], ttl: TTL) -> None:
        """Override the freshness window of one domain."""
        self._domain_ttls[DomainKey.of(domain).value] = ttl

    # Reads

    async def get(self, domain: Union[str, DomainKey], force: bool = False) -> Any:
        """
        Get the payload of a domain, fetching it when stale or absent.

        Args:
            domain: Domain partition key
            force: Refetch even if the entry is fresh

        Returns:
            The cached or freshly fetched payload

        Raises:
            Exception: The fetch error; the previous entry is left intact
        """
        key = DomainKey.of(domain).value

        with tracer.start_as_current_span("cache.get") as span:
            span.set_attribute("domain", key)

            entry = self._entries.get(key)
            if entry is None:
                entry = CacheEntry.placeholder(key)
                self._entries[key] = entry

            if not force and entry.is_fresh(self._clock()):
                span.set_attribute("cache_result", CacheLookup.HIT.value)
                self._record_lookup(key, CacheLookup.HIT)
                return entry.payload

            if entry.fetch_is_current:
                span.set_attribute("cache_result", CacheLookup.SHARED.value)
                self._record_lookup(key, CacheLookup.SHARED)
                return await asyncio.shield(entry.in_flight_fetch)

            span.set_attribute("cache_result", CacheLookup.MISS.value)
            self._record_lookup(key, CacheLookup.MISS)

            if entry.is_fetching:
                # Started before an invalidation; its result is superseded.
                logger.debug("cache_fetch_superseded", domain=key)

            fetch = asyncio.ensure_future(self._fetch(key, entry.generation))
            fetch.add_done_callback(self._retrieve_fetch_error)
            entry.in_flight_fetch = fetch
            entry.fetch_generation = entry.generation

            try:
                return await asyncio.shield(fetch)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                raise

    async def prefetch(self, domain: Union[str, DomainKey]) -> bool:
        """Warm a partition; failures are logged, not raised."""
        try:
            await self.get(domain)
            return True
        except Exception as e:
            logger.warning(
                "cache_prefetch_failed",
                domain=str(domain),
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def peek(self, domain: Union[str, DomainKey]) -> Any:
        """Cached payload without fetching (None if never fetched)."""
        entry = self._entries.get(DomainKey.of(domain).value)
        return entry.payload if entry is not None else None

    def entry(self, domain: Union[str, DomainKey]) -> Optional[CacheEntry]:
        """The cache entry of a domain, if one exists."""
        return self._entries.get(DomainKey.of(domain).value)

    def version(self, domain: Union[str, DomainKey]) -> Optional[int]:
        """Fetch version of a domain's entry; changes with every refresh."""
        entry = self._entries.get(DomainKey.of(domain).value)
        return entry.version if entry is not None else None

    def is_fresh(self, domain: Union[str, DomainKey]) -> bool:
        entry = self._entries.get(DomainKey.of(domain).value)
        return entry is not None and entry.is_fresh(self._clock())

    # Invalidation

    def invalidate(self, domain: Union[str, DomainKey]) -> bool:
        """
        Mark one domain stale without clearing its payload.

        Returns:
            True if an entry existed for the domain
        """
        key = DomainKey.of(domain).value
        entry = self._entries.get(key)
        if entry is None:
            return False

        entry.invalidate(self._clock())
        logger.debug("cache_invalidated", domain=key, version=entry.version)
        return True

    def invalidate_all(self) -> int:
        """Mark every domain stale; returns the number of entries touched."""
        now = self._clock()
        for entry in self._entries.values():
            entry.invalidate(now)
        logger.info("cache_invalidated_all", count=len(self._entries))
        return len(self._entries)

    # Optimistic patches

    def apply_optimistic_patch(
        self, domain: Union[str, DomainKey], patch_fn: PatchFn
    ) -> bool:
        """
        Transform the cached payload in place of a confirmed write.

        The result is provisional until reverted or overwritten by the next
        authoritative fetch. Domains without data are left untouched.

        Returns:
            True if a payload was patched
        """
        key = DomainKey.of(domain).value
        entry = self._entries.get(key)
        if entry is None or not entry.has_data:
            logger.debug("optimistic_patch_skipped", domain=key, reason="no_data")
            return False

        entry.payload = patch_fn(entry.payload)
        entry.provisional = True
        return True

    def revert_optimistic_patch(
        self,
        domain: Union[str, DomainKey],
        previous_payload: Any,
        expected_version: Optional[int] = None,
    ) -> bool:
        """
        Restore a payload captured before an optimistic patch.

        A revert is skipped when a fetch replaced the entry since the
        payload was captured (``expected_version`` no longer matches).

        Returns:
            True if the payload was restored
        """
        key = DomainKey.of(domain).value
        entry = self._entries.get(key)
        if entry is None or not entry.has_data:
            return False

        if expected_version is not None and entry.version != expected_version:
            logger.debug(
                "optimistic_revert_skipped",
                domain=key,
                expected_version=expected_version,
                version=entry.version,
            )
            return False

        entry.payload = previous_payload
        entry.provisional = False
        return True

    # Internals

    async def _fetch(self, key: str, generation: int) -> Any:
        with tracer.start_as_current_span("cache.fetch") as span:
            span.set_attribute("domain", key)
            started = time.perf_counter()

            try:
                payload = await run_with_timeout(
                    lambda: self._fetcher(key),
                    self._fetch_timeout_seconds,
                    f"Fetching domain '{key}' exceeded "
                    f"{self._fetch_timeout_seconds:g}s",
                )
            except Exception as e:
                duration = time.perf_counter() - started
                self._release_fetch(key, asyncio.current_task())
                if self._metrics:
                    self._metrics.record_fetch(key, duration, success=False)
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                logger.warning(
                    "cache_fetch_failed",
                    domain=key,
                    error_type=type(e).__name__,
                    error=str(e),
                    kept_stale=self._entries[key].has_data,
                )
                raise

            duration = time.perf_counter() - started
            if self._metrics:
                self._metrics.record_fetch(key, duration, success=True)

            previous = self._entries.get(key)
            if previous is not None and previous.in_flight_fetch is not asyncio.current_task():
                # A newer fetch owns the entry; this result only serves its own waiters.
                logger.debug(
                    "cache_fetch_discarded", domain=key, generation=generation
                )
                return payload

            now = self._clock()
            fresh = CacheEntry.from_fetch(key, payload, now, self.ttl_for(key))
            if previous is not None:
                fresh.version = previous.version + 1
                fresh.generation = previous.generation
                if previous.generation != generation:
                    # Invalidated while the fetch was in flight.
                    fresh.invalidate(now)
                    fresh.generation = previous.generation
            self._entries[key] = fresh

            logger.debug(
                "cache_fetch_completed",
                domain=key,
                duration_ms=round(duration * 1000, 2),
                version=fresh.version,
            )
            return payload

    def _release_fetch(self, key: str, fetch: Optional["asyncio.Future[Any]"]) -> None:
        entry = self._entries.get(key)
        if entry is not None and entry.in_flight_fetch is fetch:
            entry.in_flight_fetch = None
            entry.fetch_generation = None

    def _record_lookup(self, key: str, lookup: CacheLookup) -> None:
        if self._metrics:
            self._metrics.record_cache_request(key, lookup.value)

    @staticmethod
    def _retrieve_fetch_error(fetch: "asyncio.Future[Any]") -> None:
        # Waiters may all be gone; mark the error as observed.
        if not fetch.cancelled():
            fetch.exception()
