# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Deterministic threat, reputation, prevalence and freshness scores.

* ``reputation`` is the probabilistic OR of the reliability of every feed
  that reported the indicator.
* ``prevalence`` is the share of ``saturation`` feeds that reported it.
* ``freshness`` decays linearly with ``last_seen`` age: 1.0 when just seen,
  0.5 after one half-life, 0.0 after two.
* ``threat`` blends the severity weight (60%) with source confidence (40%).
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from tiace.core.constants import SEVERITY_WEIGHTS
from tiace.enrichment.base import EnrichmentStage
from tiace.enrichment.context import EnrichmentContext
from tiace.models.indicator import utcnow

SEVERITY_SHARE = 0.6


class ScoringStage(EnrichmentStage):
    def __init__(
        self,
        reliability_of: Callable[[str, str], float],
        *,
        half_life_days: float = 30.0,
        saturation: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._reliability_of = reliability_of
        self._half_life_days = half_life_days
        self._saturation = max(1, saturation)
        self._clock = clock

    @property
    def stage_name(self) -> str:
        return "scoring"

    @property
    def order(self) -> int:
        return 10

    def freshness(self, last_seen: datetime) -> float:
        age_days = max(0.0, (self._clock() - last_seen).total_seconds() / 86400)
        return max(0.0, 1.0 - age_days / (2 * self._half_life_days))

    async def enrich(self, context: EnrichmentContext) -> str:
        indicator = context.indicator
        distrust = 1.0
        for feed_id in indicator.source_feeds:
            distrust *= 1.0 - self._reliability_of(context.tenant.tenant_id, feed_id)

        scoring = indicator.scoring
        scoring.reputation = round(1.0 - distrust, 6) if indicator.source_feeds else 0.0
        scoring.prevalence = round(min(1.0, len(indicator.source_feeds) / self._saturation), 6)
        scoring.freshness = round(self.freshness(indicator.last_seen), 6)
        scoring.threat = round(
            SEVERITY_SHARE * SEVERITY_WEIGHTS[indicator.severity]
            + (1 - SEVERITY_SHARE) * indicator.confidence,
            6,
        )
        return f"threat={scoring.threat:.3f}"
