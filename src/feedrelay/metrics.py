"""
Relay metrics.

RelayMetrics holds plain counters updated by the delivery core and the cycle
processor. MetricsExporter publishes them as low-cardinality Prometheus
metrics (no item, source or webhook labels).
"""

from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge
from prometheus_client.registry import CollectorRegistry


@dataclass
class RelayMetrics:
    """Counters for one relay process."""

    cycles_run: int = 0
    cycles_failed: int = 0
    items_found: int = 0
    items_selected: int = 0

    deliveries_succeeded: int = 0
    deliveries_failed: int = 0
    retries: int = 0
    rate_limit_waits: int = 0

    endpoint_successes: dict[int, int] = field(default_factory=dict)
    endpoint_failures: dict[int, int] = field(default_factory=dict)

    def record_outcome(self, endpoint_index: int, success: bool) -> None:
        if success:
            self.deliveries_succeeded += 1
            self.endpoint_successes[endpoint_index] = (
                self.endpoint_successes.get(endpoint_index, 0) + 1
            )
        else:
            self.deliveries_failed += 1
            self.endpoint_failures[endpoint_index] = (
                self.endpoint_failures.get(endpoint_index, 0) + 1
            )


class MetricsExporter:
    """
    Prometheus exporter for RelayMetrics.

    Counters are advanced by the delta since the previous update() so the
    exported values stay monotonic.

    Usage:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)
        exporter.update(metrics, cache_size=..., queue_depth=...)
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or CollectorRegistry()
        self._last = RelayMetrics()

        self._cycles_run = Counter(
            "feedrelay_cycles_run",
            "Polling cycles executed",
            registry=self._registry,
        )
        self._cycles_failed = Counter(
            "feedrelay_cycles_failed",
            "Polling cycles abandoned because of an error",
            registry=self._registry,
        )
        self._items_found = Counter(
            "feedrelay_items_found",
            "Candidate items returned by the feed layer",
            registry=self._registry,
        )
        self._items_selected = Counter(
            "feedrelay_items_selected",
            "Items selected for delivery after deduplication",
            registry=self._registry,
        )
        self._deliveries_succeeded = Counter(
            "feedrelay_deliveries_succeeded",
            "Item deliveries that succeeded (per endpoint)",
            registry=self._registry,
        )
        self._deliveries_failed = Counter(
            "feedrelay_deliveries_failed",
            "Item deliveries that failed after retries (per endpoint)",
            registry=self._registry,
        )
        self._retries = Counter(
            "feedrelay_delivery_retries",
            "Webhook send retries",
            registry=self._registry,
        )
        self._rate_limit_waits = Counter(
            "feedrelay_rate_limit_waits",
            "Sends deferred by the per-endpoint rate limiter",
            registry=self._registry,
        )
        self._cache_size = Gauge(
            "feedrelay_cache_seen_items",
            "Item identities held by the dedup cache",
            registry=self._registry,
        )
        self._queue_depth = Gauge(
            "feedrelay_queue_depth",
            "Payloads waiting across all endpoint queues",
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def update(
        self,
        metrics: RelayMetrics,
        *,
        cache_size: int | None = None,
        queue_depth: int | None = None,
    ) -> None:
        """Publish the current counters."""
        last = self._last
        self._cycles_run.inc(max(0, metrics.cycles_run - last.cycles_run))
        self._cycles_failed.inc(max(0, metrics.cycles_failed - last.cycles_failed))
        self._items_found.inc(max(0, metrics.items_found - last.items_found))
        self._items_selected.inc(max(0, metrics.items_selected - last.items_selected))
        self._deliveries_succeeded.inc(
            max(0, metrics.deliveries_succeeded - last.deliveries_succeeded)
        )
        self._deliveries_failed.inc(max(0, metrics.deliveries_failed - last.deliveries_failed))
        self._retries.inc(max(0, metrics.retries - last.retries))
        self._rate_limit_waits.inc(max(0, metrics.rate_limit_waits - last.rate_limit_waits))

        self._last = RelayMetrics(
            cycles_run=metrics.cycles_run,
            cycles_failed=metrics.cycles_failed,
            items_found=metrics.items_found,
            items_selected=metrics.items_selected,
            deliveries_succeeded=metrics.deliveries_succeeded,
            deliveries_failed=metrics.deliveries_failed,
            retries=metrics.retries,
            rate_limit_waits=metrics.rate_limit_waits,
        )

        if cache_size is not None:
            self._cache_size.set(cache_size)
        if queue_depth is not None:
            self._queue_depth.set(queue_depth)
