# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Staged indicator enrichment."""

from tiace.enrichment.attribution import AttributionRule, AttributionRules, AttributionStage
from tiace.enrichment.base import EnrichmentStage
from tiace.enrichment.context import EnrichmentContext
from tiace.enrichment.geo import GeoEntry, GeoTable
from tiace.enrichment.lookup import ContextStage
from tiace.enrichment.pipeline import EnrichmentPipeline
from tiace.enrichment.scoring import ScoringStage
from tiace.enrichment.synthesis import SynthesisStage, registrable_domain

__all__ = [
    "AttributionRule",
    "AttributionRules",
    "AttributionStage",
    "ContextStage",
    "EnrichmentContext",
    "EnrichmentPipeline",
    "EnrichmentStage",
    "GeoEntry",
    "GeoTable",
    "ScoringStage",
    "SynthesisStage",
    "registrable_domain",
]
