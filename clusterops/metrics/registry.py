from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

DB_OPERATION_TOTAL = Counter(
    "clusterops_db_operation_total",
    "Operation repository calls by outcome.",
    ["op", "status"],
)

DB_OPERATION_LATENCY_SECONDS = Histogram(
    "clusterops_db_operation_latency_seconds",
    "Operation repository call latency, retries included.",
    ["op"],
)

DB_RETRY_TOTAL = Counter(
    "clusterops_db_retry_total",
    "Transient storage failures that were retried.",
    ["op"],
)

STEP_DURATION_SECONDS = Histogram(
    "clusterops_step_duration_seconds",
    "Wall time of a single step run.",
    ["stage", "step"],
)

STEP_RESULT_TOTAL = Counter(
    "clusterops_step_result_total",
    "Step runs by result (done, delay, transient, terminal).",
    ["stage", "step", "result"],
)

OPERATIONS_FINISHED_TOTAL = Counter(
    "clusterops_operations_finished_total",
    "Operations that reached a terminal state.",
    ["type", "state"],
)

QUEUE_DISPATCH_TOTAL = Counter(
    "clusterops_queue_dispatch_total",
    "Queue dispatches by result (done, requeued, error).",
    ["queue", "result"],
)

QUEUE_DEPTH = Gauge(
    "clusterops_queue_depth",
    "Operation IDs waiting for a worker.",
    ["queue"],
)
