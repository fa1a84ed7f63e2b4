"""
Prometheus metrics for the reconcile loop and work queue.

Provides observability into reconciliation passes and remote calls.
"""
from prometheus_client import Counter, Histogram, Gauge

# Reconcile metrics
reconcile_total = Counter(
    "oradb_reconcile_total",
    "Total number of reconcile passes",
    ["kind", "outcome"],
)

reconcile_duration_seconds = Histogram(
    "oradb_reconcile_duration_seconds",
    "Time spent in one reconcile pass",
    ["kind"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60),
)

reconcile_errors_total = Counter(
    "oradb_reconcile_errors_total",
    "Reconcile passes that raised instead of returning a result",
    ["kind"],
)

# Remote call metrics
actions_dispatched_total = Counter(
    "oradb_actions_dispatched_total",
    "Corrective actions sent to a remote control plane",
    ["kind", "action"],
)

actuator_errors_total = Counter(
    "oradb_actuator_errors_total",
    "Classified remote-call failures",
    ["kind", "classification"],
)

consistency_mismatch_total = Counter(
    "oradb_consistency_mismatch_total",
    "Direct reads that disagreed with the list index",
    ["kind"],
)

# Queue metrics
queue_depth = Gauge(
    "oradb_queue_depth",
    "Number of resource keys waiting in the work queue",
)

queue_processing = Gauge(
    "oradb_queue_processing",
    "Number of resource keys currently being reconciled",
)


def record_reconcile(kind: str, outcome: str, duration_seconds: float):
    """Record a finished reconcile pass."""
    reconcile_total.labels(kind=kind, outcome=outcome).inc()
    reconcile_duration_seconds.labels(kind=kind).observe(duration_seconds)


def record_reconcile_error(kind: str):
    """Record a reconcile pass that raised."""
    reconcile_errors_total.labels(kind=kind).inc()


def record_action_dispatched(kind: str, action: str):
    """Record a corrective action sent to the actuator."""
    actions_dispatched_total.labels(kind=kind, action=action).inc()


def record_actuator_error(kind: str, classification: str):
    """Record a classified actuator failure."""
    actuator_errors_total.labels(kind=kind, classification=classification).inc()


def record_consistency_mismatch(kind: str):
    consistency_mismatch_total.labels(kind=kind).inc()


def update_queue_stats(queued: int, processing: int):
    """Update queue depth metrics."""
    queue_depth.set(queued)
    queue_processing.set(processing)
