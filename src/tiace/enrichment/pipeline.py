# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Enrichment pipeline orchestrator: chains the ordered stages."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable

from tiace.cache.manager import CacheManager
from tiace.core.config import Settings
from tiace.enrichment.attribution import AttributionRules, AttributionStage
from tiace.enrichment.base import EnrichmentStage
from tiace.enrichment.context import EnrichmentContext
from tiace.enrichment.geo import GeoTable
from tiace.enrichment.lookup import ContextStage
from tiace.enrichment.scoring import ScoringStage
from tiace.enrichment.synthesis import SynthesisStage
from tiace.models.indicator import Indicator, utcnow
from tiace.models.tenant import TenantContext
from tiace.storage.base import EnrichmentRecord

logger = logging.getLogger("tiace.enrichment.pipeline")


class EnrichmentPipeline:
    """Runs scoring -> context -> attribution -> synthesis over one indicator.

    A failing stage is recorded in the context and the remaining stages
    still run; the indicator is persisted either way.
    """

    def __init__(self, stages: list[EnrichmentStage] | None = None) -> None:
        self._stages: list[EnrichmentStage] = sorted(stages or [], key=lambda s: s.order)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        reliability_of: Callable[[str, str], float],
        *,
        cache: CacheManager | None = None,
    ) -> EnrichmentPipeline:
        geo = GeoTable.load(settings.geo_table_file) if settings.geo_table_file else GeoTable()
        rules = (
            AttributionRules.load(settings.attribution_rules_file)
            if settings.attribution_rules_file
            else AttributionRules()
        )
        return cls(
            [
                ScoringStage(
                    reliability_of,
                    half_life_days=settings.freshness_half_life_days,
                    saturation=settings.prevalence_saturation,
                ),
                ContextStage(geo, cache=cache),
                AttributionStage(rules),
                SynthesisStage(
                    prefix_v4=settings.related_prefix_v4,
                    prefix_v6=settings.related_prefix_v6,
                    confidence=settings.synthesis_edge_confidence,
                ),
            ]
        )

    def register_stage(self, stage: EnrichmentStage) -> None:
        self._stages.append(stage)
        self._stages.sort(key=lambda s: s.order)

    @property
    def stage_names(self) -> list[str]:
        return [s.stage_name for s in self._stages]

    async def run(
        self,
        tenant: TenantContext,
        indicator: Indicator,
        *,
        skip: Iterable[str] = (),
    ) -> EnrichmentContext:
        skipped = set(skip)
        context = EnrichmentContext(tenant=tenant, indicator=indicator)
        for stage in self._stages:
            if stage.stage_name in skipped:
                continue
            try:
                context.stages[stage.stage_name] = await stage.enrich(context)
            except Exception as exc:
                logger.error(
                    "Enrichment stage %s failed for %s: %s",
                    stage.stage_name,
                    indicator.indicator_id or indicator.value,
                    exc,
                    extra={"tenant_id": tenant.tenant_id},
                )
                context.errors[stage.stage_name] = f"{type(exc).__name__}: {exc}"
            # Stage boundary: let cancellation and other jobs in.
            await asyncio.sleep(0)
        return context

    @staticmethod
    def record(context: EnrichmentContext) -> EnrichmentRecord:
        return EnrichmentRecord(
            indicator_id=context.indicator.indicator_id,
            stages=dict(context.stages),
            errors=dict(context.errors),
            enriched_at=utcnow(),
        )
