"""
Sync Metrics Collector

Prometheus metrics for cache reads, domain fetches, mutations, retries,
audit writes and undo consumption. Each collector owns its own registry so
several sessions can coexist in one process.
"""

from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)


class SyncMetrics:
    """Prometheus counters and histograms for one sync session."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.prom_cache_requests_total = Counter(
            "syncguard_cache_requests_total",
            "Cache reads by domain and how they were served",
            ["domain", "result"],
            registry=self.registry,
        )
        self.prom_cache_fetch_failures_total = Counter(
            "syncguard_cache_fetch_failures_total",
            "Failed domain fetches",
            ["domain"],
            registry=self.registry,
        )
        self.prom_cache_fetch_duration = Histogram(
            "syncguard_cache_fetch_duration_seconds",
            "Domain fetch duration in seconds",
            ["domain"],
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=self.registry,
        )
        self.prom_mutations_total = Counter(
            "syncguard_mutations_total",
            "Mutations by terminal status",
            ["domain", "kind", "status"],
            registry=self.registry,
        )
        self.prom_mutation_retries_total = Counter(
            "syncguard_mutation_retries_total",
            "Retries of transient mutation failures",
            ["domain", "kind"],
            registry=self.registry,
        )
        self.prom_audit_write_failures_total = Counter(
            "syncguard_audit_write_failures_total",
            "Audit records that could not be persisted",
            registry=self.registry,
        )
        self.prom_undo_consumed_total = Counter(
            "syncguard_undo_consumed_total",
            "Undo consumption attempts by outcome",
            ["outcome"],
            registry=self.registry,
        )

    def record_cache_request(self, domain: str, result: str) -> None:
        self.prom_cache_requests_total.labels(domain=domain, result=result).inc()

    def record_fetch(self, domain: str, duration_seconds: float, success: bool) -> None:
        self.prom_cache_fetch_duration.labels(domain=domain).observe(duration_seconds)
        if not success:
            self.prom_cache_fetch_failures_total.labels(domain=domain).inc()

    def record_mutation(self, domain: str, kind: str, status: str) -> None:
        self.prom_mutations_total.labels(domain=domain, kind=kind, status=status).inc()

    def record_retry(self, domain: str, kind: str) -> None:
        self.prom_mutation_retries_total.labels(domain=domain, kind=kind).inc()

    def record_audit_failure(self) -> None:
        self.prom_audit_write_failures_total.inc()

    def record_undo(self, outcome: str) -> None:
        self.prom_undo_consumed_total.labels(outcome=outcome).inc()

    def sample(self, name: str, **labels: str) -> float:
        """Current value of a sample, 0.0 when never observed."""
        value = self.registry.get_sample_value(name, labels or None)
        return value or 0.0

    def render(self) -> bytes:
        """Export all metrics in the Prometheus text format."""
        return generate_latest(self.registry)
