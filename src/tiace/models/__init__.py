# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Canonical domain models for tiace."""

from tiace.models.entities import Campaign, Cluster, PendingRelationship, Relationship, ThreatActor
from tiace.models.feed import FeedAuth, FeedConfiguration, FeedFilters, QualityMetrics, RawRecord, SyncJob
from tiace.models.indicator import Attribution, GeoInfo, Indicator, IndicatorContext, Scoring
from tiace.models.normalize import custom_kind, fingerprint, normalize
from tiace.models.tenant import TenantContext

__all__ = [
    "Attribution",
    "Campaign",
    "Cluster",
    "FeedAuth",
    "FeedConfiguration",
    "FeedFilters",
    "GeoInfo",
    "Indicator",
    "IndicatorContext",
    "PendingRelationship",
    "QualityMetrics",
    "RawRecord",
    "Relationship",
    "Scoring",
    "SyncJob",
    "TenantContext",
    "ThreatActor",
    "custom_kind",
    "fingerprint",
    "normalize",
]
