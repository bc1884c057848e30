"""Prometheus metrics for the metrics aggregation runs."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

BATCH_ITEMS = Counter(
    "metrics_batch_items_total",
    "Subjects processed by metrics batch drivers",
    ["kind", "period", "status"],  # kind: department, community; status: success, error
)

SCHEDULED_RUNS = Counter(
    "metrics_scheduled_runs_total",
    "Scheduled metrics job executions",
    ["job", "status"],  # status: success, error
)

BATCH_DURATION = Histogram(
    "metrics_batch_duration_seconds",
    "Wall time of metrics batch drivers",
    ["kind", "period"],
)
