from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the Gateway controller on ``/metrics``."""

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "gateway_reconcile_total",
            "Total Gateway reconcile passes by outcome",
            ["result"],
        )
    )
    reconcile_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "gateway_reconcile_errors_total",
            "Total Gateway reconcile passes that raised an error",
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "gateway_reconcile_duration_seconds",
            "Seconds spent in a single Gateway reconcile pass",
            buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    requeues_total: Counter = field(
        default_factory=lambda: Counter(
            "gateway_requeues_total",
            "Total requeues scheduled by the work queue",
            ["kind"],
        )
    )
    duplicates_reduced_total: Counter = field(
        default_factory=lambda: Counter(
            "gateway_duplicates_reduced_total",
            "Total duplicate dependent objects deleted by the reducer",
            ["role"],
        )
    )
    workqueue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "gateway_workqueue_depth",
            "Current number of Gateway keys waiting to be reconciled",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "gateway_watch_errors_total",
            "Total Kubernetes watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "gateway_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "gateway_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
