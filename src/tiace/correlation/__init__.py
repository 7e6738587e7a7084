# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Cross-feed correlation: typed edges and indicator clusters."""

from tiace.correlation.clusters import ClusterIndex, ClusterSnapshot
from tiace.correlation.engine import CorrelationEngine
from tiace.correlation.graph import EdgeIndex
from tiace.correlation.rules import NodeFacts, prefer, resolve_proposals

__all__ = [
    "ClusterIndex",
    "ClusterSnapshot",
    "CorrelationEngine",
    "EdgeIndex",
    "NodeFacts",
    "prefer",
    "resolve_proposals",
]
