# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Enrichment context passed through the stage pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field

from tiace.models.entities import PendingRelationship, ThreatActor
from tiace.models.indicator import Indicator
from tiace.models.tenant import TenantContext


@dataclass
class EnrichmentContext:
    """Mutable context passed through the enrichment stages.

    Stages mutate ``indicator`` in place and append derived indicators, proto-actors
    and edges expressed by natural key; the sync pipeline resolves and persists
    those after the indicator itself is stored.
    """

    tenant: TenantContext
    indicator: Indicator
    derived: list[Indicator] = field(default_factory=list)
    relationships: list[PendingRelationship] = field(default_factory=list)
    actors: list[ThreatActor] = field(default_factory=list)
    stages: dict[str, str] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def node(self) -> tuple[str, str, str]:
        return ("indicator", self.indicator.kind, self.indicator.value)
