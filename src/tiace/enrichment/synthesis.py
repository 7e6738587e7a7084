# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Related-indicator synthesis.

IP addresses are related to their containing network (``/24`` and ``/64``
by default); URLs to their registrable domain, or to their address when the
host is an IP literal.
"""

from __future__ import annotations

import ipaddress

from tiace.core.constants import IndicatorKind, RelationshipType, Severity
from tiace.enrichment.base import EnrichmentStage
from tiace.enrichment.context import EnrichmentContext
from tiace.enrichment.lookup import url_host
from tiace.models.entities import PendingRelationship
from tiace.models.indicator import Indicator

SYNTHESIZED_TAG = "synthesized"

# Second-level labels under which registrations happen one level deeper.
_SECOND_LEVEL = frozenset({"co", "com", "net", "org", "gov", "edu", "ac", "or", "ne", "go", "gob", "mil"})


def registrable_domain(host: str) -> str:
    """Approximate the registrable domain: ``a.b.example.co.uk`` -> ``example.co.uk``."""
    labels = [label for label in host.lower().rstrip(".").split(".") if label]
    if len(labels) <= 2:
        return ".".join(labels)
    if labels[-2] in _SECOND_LEVEL and len(labels[-1]) == 2:
        return ".".join(labels[-3:])
    return ".".join(labels[-2:])


class SynthesisStage(EnrichmentStage):
    def __init__(self, *, prefix_v4: int = 24, prefix_v6: int = 64, confidence: float = 0.5) -> None:
        self._prefix_v4 = prefix_v4
        self._prefix_v6 = prefix_v6
        self._confidence = confidence

    @property
    def stage_name(self) -> str:
        return "synthesis"

    @property
    def order(self) -> int:
        return 40

    def related_to(self, indicator: Indicator) -> tuple[str, str] | None:
        """Return the ``(kind, value)`` the indicator should be related to, if any."""
        if indicator.kind == IndicatorKind.IP:
            try:
                address = ipaddress.ip_address(indicator.value)
            except ValueError:
                return None
            prefix = self._prefix_v4 if address.version == 4 else self._prefix_v6
            network = ipaddress.ip_network(f"{address}/{prefix}", strict=False)
            return IndicatorKind.CIDR.value, network.compressed
        if indicator.kind == IndicatorKind.URL:
            host = url_host(indicator.value)
            if not host:
                return None
            try:
                ipaddress.ip_address(host)
            except ValueError:
                return IndicatorKind.DOMAIN.value, registrable_domain(host)
            return IndicatorKind.IP.value, host
        return None

    async def enrich(self, context: EnrichmentContext) -> str:
        indicator = context.indicator
        target = self.related_to(indicator)
        if target is None:
            return "skipped"
        kind, value = target
        context.derived.append(
            Indicator(
                tenant_id=indicator.tenant_id,
                kind=kind,
                value=value,
                first_seen=indicator.first_seen,
                last_seen=indicator.last_seen,
                confidence=min(indicator.confidence, self._confidence),
                severity=Severity.INFO,
                source_feeds=set(indicator.source_feeds),
                tags={SYNTHESIZED_TAG},
            )
        )
        context.relationships.append(
            PendingRelationship(
                source=context.node,
                target=("indicator", kind, value),
                relationship_type=RelationshipType.RELATED_TO,
                confidence=self._confidence,
                origin=self.stage_name,
            )
        )
        return f"{kind}:{value}"
