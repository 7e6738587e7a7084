# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Field-level merge rules for corroborating observations."""

from __future__ import annotations

from datetime import timedelta
from typing import Any

from tiace.core.constants import SEVERITY_ORDER
from tiace.models.indicator import Indicator


def combine_confidence(current: float, incoming: float, *, independent: bool) -> float:
    """Probabilistic OR for an independent source, otherwise the maximum.

    Both branches are monotonically non-decreasing in *current* and bounded
    at 1.0.
    """
    if independent:
        combined = 1.0 - (1.0 - current) * (1.0 - incoming)
    else:
        combined = max(current, incoming)
    return min(1.0, max(current, combined))


def conflict_reason(
    existing: Indicator,
    incoming: Indicator,
    *,
    incoming_trusted: bool,
    tolerance: timedelta,
) -> str | None:
    """Return why *incoming* cannot be merged into *existing*, or ``None``."""
    if not (incoming_trusted and existing.first_seen_trusted):
        return None
    drift = abs(existing.first_seen - incoming.first_seen)
    if drift > tolerance:
        hours = drift.total_seconds() / 3600
        return f"trusted first_seen disagrees by {hours:.1f}h"
    return None


def _snapshot(indicator: Indicator) -> tuple[Any, ...]:
    return (
        indicator.first_seen,
        indicator.last_seen,
        indicator.confidence,
        indicator.severity,
        frozenset(indicator.source_feeds),
        frozenset(indicator.tags),
        frozenset(indicator.malware_families),
        frozenset(indicator.threat_actors),
        frozenset(indicator.campaigns),
        frozenset(indicator.kill_chain_phases),
        frozenset(indicator.mitre_techniques),
        len(indicator.attributions),
        len(indicator.references),
        indicator.description,
        indicator.context.model_dump_json(),
        indicator.first_seen_trusted,
    )


def merge_observation(
    existing: Indicator,
    incoming: Indicator,
    *,
    reliability: float,
    reputable_reliability: float,
    trusted: bool,
) -> bool:
    """Fold *incoming* into *existing* in place.  Returns ``True`` if anything changed."""
    before = _snapshot(existing)

    new_feeds = incoming.source_feeds - existing.source_feeds
    existing.confidence = combine_confidence(
        existing.confidence,
        incoming.confidence,
        independent=bool(new_feeds) and reliability >= reputable_reliability,
    )

    if incoming.last_seen > existing.last_seen:
        existing.last_seen = incoming.last_seen
    if incoming.first_seen < existing.first_seen:
        existing.first_seen = incoming.first_seen
    existing.first_seen_trusted = existing.first_seen_trusted or trusted

    if SEVERITY_ORDER[incoming.severity] > SEVERITY_ORDER[existing.severity]:
        existing.severity = incoming.severity

    existing.source_feeds |= incoming.source_feeds
    existing.tags |= incoming.tags
    existing.malware_families |= incoming.malware_families
    existing.threat_actors |= incoming.threat_actors
    existing.campaigns |= incoming.campaigns
    existing.kill_chain_phases |= incoming.kill_chain_phases
    existing.mitre_techniques |= incoming.mitre_techniques

    known = {(a.actor.lower(), a.feed_id) for a in existing.attributions}
    for attribution in incoming.attributions:
        if (attribution.actor.lower(), attribution.feed_id) not in known:
            existing.attributions.append(attribution.model_copy())
            known.add((attribution.actor.lower(), attribution.feed_id))

    for ref in incoming.references:
        if ref not in existing.references:
            existing.references.append(ref)
    for key, value in incoming.external_ids.items():
        existing.external_ids.setdefault(key, value)
    if not existing.description and incoming.description:
        existing.description = incoming.description
    existing.raw_payloads.update(incoming.raw_payloads)

    ctx, inc = existing.context, incoming.context
    if ctx.geo is None and inc.geo is not None:
        ctx.geo = inc.geo.model_copy()
    if ctx.asn is None and inc.asn:
        ctx.asn = inc.asn
    if ctx.organization is None and inc.organization:
        ctx.organization = inc.organization
    ctx.ports = sorted(set(ctx.ports) | set(inc.ports))
    ctx.protocols = sorted(set(ctx.protocols) | set(inc.protocols))
    ctx.hashes = sorted(set(ctx.hashes) | set(inc.hashes))

    if incoming.scoring.ml_confidence is not None:
        existing.scoring.ml_confidence = incoming.scoring.ml_confidence
    if incoming.scoring.human_validated is not None:
        existing.scoring.human_validated = incoming.scoring.human_validated

    return _snapshot(existing) != before
