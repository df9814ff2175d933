"""Prometheus metrics for the controllers.

Metrics are bound to a CollectorRegistry supplied by whoever composes the
controllers; nothing registers with the process-wide default registry, so
several managers (or tests) can coexist in one interpreter.
"""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram


class Metrics:
    """The metric families exported by the manager and the controllers."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()

        self.reconcile_total = Counter(
            "convergence_reconcile_total",
            "Reconciliations by controller and outcome",
            ["controller", "result"],
            registry=self.registry,
        )
        self.reconcile_errors = Counter(
            "convergence_reconcile_errors_total",
            "Reconciliations that raised",
            ["controller"],
            registry=self.registry,
        )
        self.reconcile_duration = Histogram(
            "convergence_reconcile_duration_seconds",
            "Time spent in a single reconciliation",
            ["controller"],
            registry=self.registry,
        )
        self.queue_depth = Gauge(
            "convergence_workqueue_depth",
            "Keys waiting in a controller work queue",
            ["controller"],
            registry=self.registry,
        )
        self.drift_triggered = Counter(
            "convergence_drift_triggered_total",
            "Drift checks triggered on configurations",
            registry=self.registry,
        )
        self.cloudresource_update_available = Gauge(
            "cloudresource_update_available",
            "Whether a cloud resource runs an older revision than its plan offers",
            ["namespace", "name"],
            registry=self.registry,
        )
        self.revision_in_use = Gauge(
            "revision_in_use_total",
            "Cloud resources using a plan revision",
            ["plan", "revision"],
            registry=self.registry,
        )
