# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Prometheus collectors emitted by the engine.

Policy (SLOs, alerting) lives outside the engine; these are the raw signals.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

INDICATORS_TOTAL = Counter(
    "tiace_indicators_total",
    "Indicators processed per feed by outcome",
    ["feed", "outcome"],
)

SYNC_DURATION = Histogram(
    "tiace_sync_duration_seconds",
    "Wall-clock duration of feed sync jobs",
    ["feed"],
    buckets=(0.5, 1, 2.5, 5, 10, 30, 60, 120, 300, 900),
)

SYNC_IN_FLIGHT = Gauge(
    "tiace_sync_in_flight",
    "Sync jobs currently running",
)

CORRELATION_EDGES = Counter(
    "tiace_correlation_edges_total",
    "Correlation edges inserted or retracted",
    ["action"],
)

CLUSTER_COUNT = Gauge(
    "tiace_clusters",
    "Number of live indicator clusters",
)

CHANGEFEED_LAG = Counter(
    "tiace_changefeed_lag_total",
    "Change-feed subscribers dropped for lagging",
)


def record_outcome(feed_id: str, outcome: str, count: int = 1) -> None:
    """Increment the per-feed indicator counter when *count* is positive."""
    if count > 0:
        INDICATORS_TOTAL.labels(feed=feed_id, outcome=outcome).inc(count)
