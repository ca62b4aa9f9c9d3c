"""Case booking core metrics for Prometheus.

Counters:
1. casebooking_transitions_total            - Applied status transitions (from/to)
2. casebooking_amendments_total             - Applied amendments
3. casebooking_denials_total                - Rejected actions (reason)
4. casebooking_permission_refreshes_total   - Matrix refreshes (outcome)
5. casebooking_store_unavailable_total      - StoreUnavailable surfaced (operation)
6. casebooking_stale_retries_total          - Optimistic-concurrency retries (outcome)
Histogram:
7. casebooking_operation_duration_seconds   - Facade operation latency (operation)
"""

from __future__ import annotations

import time
from collections.abc import Generator  # noqa: TC003 -- used at runtime by contextmanager
from contextlib import contextmanager

from prometheus_client import CollectorRegistry, Counter, Histogram

# Latency buckets: 5ms to 5s (store round trips dominate)
_LATENCY_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)


def _counter(
    name: str,
    documentation: str,
    labelnames: list[str],
    registry: CollectorRegistry | None,
) -> Counter:
    """Create a Counter with optional registry."""
    if registry is not None:
        return Counter(name, documentation, labelnames, registry=registry)
    return Counter(name, documentation, labelnames)


class CaseBookingMetrics:
    """Central registry for core metrics.

    Pass a custom CollectorRegistry for testing isolation.
    In production, use the default global registry (registry=None).
    """

    def __init__(self, *, registry: CollectorRegistry | None = None) -> None:
        self.transitions = _counter(
            "casebooking_transitions_total",
            "Applied case status transitions",
            ["from_status", "to_status"],
            registry,
        )
        self.amendments = _counter(
            "casebooking_amendments_total",
            "Applied case amendments",
            [],
            registry,
        )
        self.denials = _counter(
            "casebooking_denials_total",
            "Actions rejected by permission, scope or lifecycle checks",
            ["reason"],
            registry,
        )
        self.permission_refreshes = _counter(
            "casebooking_permission_refreshes_total",
            "Permission matrix refreshes",
            ["outcome"],
            registry,
        )
        self.store_unavailable = _counter(
            "casebooking_store_unavailable_total",
            "Operations failed because the backing store was unreachable",
            ["operation"],
            registry,
        )
        self.stale_retries = _counter(
            "casebooking_stale_retries_total",
            "Retries after an optimistic-concurrency conflict",
            ["outcome"],
            registry,
        )
        kwargs = {"registry": registry} if registry is not None else {}
        self.operation_duration = Histogram(
            "casebooking_operation_duration_seconds",
            "Latency of core facade operations",
            ["operation"],
            buckets=_LATENCY_BUCKETS,
            **kwargs,
        )

    @contextmanager
    def timer(self, operation: str) -> Generator[None, None, None]:
        """Observe elapsed time for one facade operation, even on error."""
        start = time.monotonic()
        try:
            yield
        finally:
            self.operation_duration.labels(operation=operation).observe(
                time.monotonic() - start,
            )
