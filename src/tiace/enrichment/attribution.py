# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Rule-based actor and campaign attribution.

Rules file shape::

    rules:
      - actor: APT28
        aliases: [Fancy Bear, Sofacy]
        campaign: Pawn Storm
        tags: [apt28]
        malware_families: [x-agent]
        value_patterns: ['\\.sofacy\\.']
        kinds: [domain, url]
        confidence: 0.6

A rule matches when the indicator kind is allowed and any tag, malware
family or value pattern matches.  Matches and feed-asserted attributions
become provisional ``attributed-to`` edges.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from tiace.core.constants import ATTRIBUTED_TO
from tiace.core.exceptions import ConfigurationError
from tiace.enrichment.base import EnrichmentStage
from tiace.enrichment.context import EnrichmentContext
from tiace.models.entities import PendingRelationship, ThreatActor
from tiace.models.indicator import Indicator
from tiace.models.normalize import canonical_kind

logger = logging.getLogger(__name__)

RULES_ORIGIN = "attribution-rules"


@dataclass(frozen=True, slots=True)
class AttributionRule:
    actor: str
    aliases: frozenset[str] = frozenset()
    campaign: str | None = None
    tags: frozenset[str] = frozenset()
    malware_families: frozenset[str] = frozenset()
    value_patterns: tuple[re.Pattern[str], ...] = ()
    kinds: frozenset[str] = frozenset()
    confidence: float = 0.5

    def matches(self, indicator: Indicator) -> bool:
        if self.kinds and indicator.kind not in self.kinds:
            return False
        if self.tags & indicator.tags:
            return True
        families = {f.lower() for f in indicator.malware_families}
        if self.malware_families & families:
            return True
        return any(p.search(indicator.value) for p in self.value_patterns)


@dataclass(slots=True)
class AttributionRules:
    rules: list[AttributionRule] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.rules)

    @classmethod
    def load(cls, path: str | Path) -> AttributionRules:
        try:
            data = yaml.safe_load(Path(path).read_text()) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigurationError(f"Cannot load attribution rules {path}: {exc}") from exc
        rules: list[AttributionRule] = []
        for raw in data.get("rules") or []:
            if not raw.get("actor"):
                raise ConfigurationError(f"Attribution rule without actor: {raw!r}")
            try:
                patterns = tuple(re.compile(p, re.IGNORECASE) for p in raw.get("value_patterns") or [])
            except re.error as exc:
                raise ConfigurationError(f"Bad value pattern in rule for {raw['actor']}: {exc}") from exc
            rules.append(
                AttributionRule(
                    actor=str(raw["actor"]).strip(),
                    aliases=frozenset(str(a).strip() for a in raw.get("aliases") or []),
                    campaign=raw.get("campaign"),
                    tags=frozenset(str(t).strip().lower() for t in raw.get("tags") or []),
                    malware_families=frozenset(
                        str(f).strip().lower() for f in raw.get("malware_families") or []
                    ),
                    value_patterns=patterns,
                    kinds=frozenset(canonical_kind(str(k)) for k in raw.get("kinds") or []),
                    confidence=float(raw.get("confidence", 0.5)),
                )
            )
        logger.info("Loaded %d attribution rules from %s", len(rules), path)
        return cls(rules)


class AttributionStage(EnrichmentStage):
    def __init__(self, rules: AttributionRules | None = None) -> None:
        self._rules = rules or AttributionRules()

    @property
    def stage_name(self) -> str:
        return "attribution"

    @property
    def order(self) -> int:
        return 30

    async def enrich(self, context: EnrichmentContext) -> str:
        indicator = context.indicator
        edges = 0

        for attribution in indicator.attributions:
            context.relationships.append(
                PendingRelationship(
                    source=context.node,
                    target=("actor", attribution.actor),
                    relationship_type=ATTRIBUTED_TO,
                    confidence=attribution.confidence,
                    origin=attribution.feed_id,
                )
            )
            edges += 1

        for rule in self._rules.rules:
            if not rule.matches(indicator):
                continue
            context.actors.append(
                ThreatActor(
                    name=rule.actor,
                    aliases=set(rule.aliases),
                    source_feeds={RULES_ORIGIN},
                )
            )
            context.relationships.append(
                PendingRelationship(
                    source=context.node,
                    target=("actor", rule.actor),
                    relationship_type=ATTRIBUTED_TO,
                    confidence=rule.confidence,
                    origin=RULES_ORIGIN,
                )
            )
            edges += 1
            if rule.campaign:
                context.relationships.append(
                    PendingRelationship(
                        source=context.node,
                        target=("campaign", rule.campaign),
                        relationship_type=ATTRIBUTED_TO,
                        confidence=rule.confidence,
                        origin=RULES_ORIGIN,
                    )
                )
                edges += 1
        return f"edges={edges}"
