from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass(frozen=True)
class CollectorMetrics:
    """Prometheus metrics exported by the collector on ``/metrics``.

    Per-kind series carry a ``collector`` label (``deployment``, ``pod``, ...)
    so operators can tell which resource kind generates traffic or errors.
    """

    events_total: Counter = field(
        default_factory=lambda: Counter(
            "meta_collector_generated_events_total",
            "Total events generated for subscribers, by collector and event type",
            ["collector", "type"],
        )
    )
    received_events_total: Counter = field(
        default_factory=lambda: Counter(
            "meta_collector_received_events_total",
            "Total watch events received from the API server",
            ["collector", "type"],
        )
    )
    reconcile_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "meta_collector_reconcile_errors_total",
            "Total failed reconciliation cycles that were scheduled for retry",
            ["collector"],
        )
    )
    dispatch_dropped_total: Counter = field(
        default_factory=lambda: Counter(
            "meta_collector_dispatch_dropped_total",
            "Total events dropped because a subscriber stream was full or closed",
            ["reason"],
        )
    )
    replayed_events_total: Counter = field(
        default_factory=lambda: Counter(
            "meta_collector_replayed_events_total",
            "Total events synthesized from the cache for joining subscribers",
            ["collector"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "meta_collector_watch_errors_total",
            "Total Kubernetes watch errors",
            ["collector"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "meta_collector_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["collector"],
        )
    )
    cache_entries: Gauge = field(
        default_factory=lambda: Gauge(
            "meta_collector_cache_entries",
            "Current number of resources tracked in the association cache",
            ["collector"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "meta_collector_queue_depth",
            "Current number of keys waiting in the reconcile work queue",
            ["collector"],
        )
    )
    subscribers: Gauge = field(
        default_factory=lambda: Gauge(
            "meta_collector_subscribers",
            "Current number of connected node subscribers",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "meta_collector",
            "Build information for the collector",
        )
    )


METRICS = CollectorMetrics()
