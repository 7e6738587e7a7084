# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""STIX 2.1 bundle generation from tenant indicators.

Generates STIX 2.1 JSON directly without requiring the ``stix2`` Python
library.  Every object id is a UUID-5 over the object's content key and
every timestamp comes from the records themselves, so the same snapshot
always yields a byte-identical bundle.  The ``x_tiace_kind`` and
``x_tiace_severity`` extension properties let the STIX parser re-import a
bundle without losing custom kinds.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from tiace.core.constants import IndicatorKind, RelationshipType
from tiace.models.entities import Campaign, Relationship, ThreatActor
from tiace.models.indicator import Indicator
from tiace.models.normalize import hash_algorithm, is_custom_kind

# ---------------------------------------------------------------------------
# Indicator kind -> STIX 2.1 cyber-observable pattern mapping
# ---------------------------------------------------------------------------

KIND_PATTERN_MAP: dict[str, str] = {
    IndicatorKind.DOMAIN.value: "[domain-name:value = '{value}']",
    IndicatorKind.URL.value: "[url:value = '{value}']",
    IndicatorKind.EMAIL.value: "[email-addr:value = '{value}']",
    IndicatorKind.MUTEX.value: "[mutex:name = '{value}']",
    IndicatorKind.USER_AGENT.value: (
        "[network-traffic:extensions.'http-request-ext'.request_header.'user-agent' = '{value}']"
    ),
}

# Relationship types exported between indicators; same-as travels as duplicate-of.
_EXPORTED_EDGES: dict[str, str] = {
    RelationshipType.SAME_AS.value: "duplicate-of",
    RelationshipType.RELATED_TO.value: "related-to",
    RelationshipType.DERIVED_FROM.value: "derived-from",
}

_STIX_NAMESPACE = uuid.UUID("00abedb4-aa42-466c-9c01-fed23315a9b7")

# The engine itself as STIX Identity
_TIACE_IDENTITY_ID = "identity--2d0f4a1e-7c55-5b8e-9e35-7b1c4d6a0f11"
_EPOCH = "2026-01-01T00:00:00.000Z"


def _deterministic_id(stix_type: str, seed: str) -> str:
    """Generate a deterministic STIX ID from a type and seed string.

    Uses UUID-5 with a fixed namespace so the same input data always
    yields the same STIX ids.
    """
    return f"{stix_type}--{uuid.uuid5(_STIX_NAMESPACE, seed)}"


def _ensure_iso(value: datetime | None) -> str:
    """Format a timestamp as STIX millisecond-precision UTC."""
    if value is None:
        return _EPOCH
    return value.strftime("%Y-%m-%dT%H:%M:%S.000Z")


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


# ---- Identity object --------------------------------------------------------

def tiace_identity() -> dict[str, Any]:
    """Return the STIX Identity object that creates every exported object."""
    return {
        "type": "identity",
        "spec_version": "2.1",
        "id": _TIACE_IDENTITY_ID,
        "created": _EPOCH,
        "modified": _EPOCH,
        "name": "TIACE Correlation Engine",
        "description": "Threat intelligence aggregated, deduplicated and correlated across feeds.",
        "identity_class": "system",
    }


# ---- Indicator conversion ---------------------------------------------------

def build_stix_pattern(kind: str, value: str) -> str:
    """Build a STIX 2.1 pattern for one normalized indicator."""
    escaped = _escape(value)
    if kind in KIND_PATTERN_MAP:
        return KIND_PATTERN_MAP[kind].format(value=escaped)
    if kind in (IndicatorKind.IP.value, IndicatorKind.CIDR.value):
        object_type = "ipv6-addr" if ":" in value else "ipv4-addr"
        return f"[{object_type}:value = '{escaped}']"
    if kind == IndicatorKind.HASH.value:
        return f"[file:hashes.'{hash_algorithm(value) or 'SHA-256'}' = '{escaped}']"
    if kind == IndicatorKind.CERTIFICATE.value:
        return f"[x509-certificate:hashes.'{hash_algorithm(value) or 'SHA-256'}' = '{escaped}']"
    if kind == IndicatorKind.ASN.value:
        return f"[autonomous-system:number = '{escaped.upper().removeprefix('AS')}']"
    if is_custom_kind(kind):
        return f"[x-tiace-{kind.partition(':')[2]}:value = '{escaped}']"
    return f"[artifact:payload_bin = '{escaped}']"


def indicator_stix_id(indicator: Indicator) -> str:
    return _deterministic_id("indicator", f"{indicator.kind}\x00{indicator.value}")


def indicator_to_stix(indicator: Indicator) -> dict[str, Any]:
    """Convert one canonical indicator to a STIX Indicator SDO."""
    labels = [f"severity:{indicator.severity.value}", *sorted(indicator.tags)]
    obj: dict[str, Any] = {
        "type": "indicator",
        "spec_version": "2.1",
        "id": indicator_stix_id(indicator),
        "created_by_ref": _TIACE_IDENTITY_ID,
        "created": _ensure_iso(indicator.first_seen),
        "modified": _ensure_iso(indicator.last_seen),
        "name": f"{indicator.kind}: {indicator.value}",
        "indicator_types": ["malicious-activity"],
        "pattern": build_stix_pattern(indicator.kind, indicator.value),
        "pattern_type": "stix",
        "valid_from": _ensure_iso(indicator.first_seen),
        "labels": labels,
        # STIX confidence is 0-100
        "confidence": int(round(indicator.confidence * 100)),
        "x_tiace_kind": indicator.kind,
        "x_tiace_severity": indicator.severity.value,
    }
    if indicator.description:
        obj["description"] = indicator.description
    if indicator.kill_chain_phases:
        obj["kill_chain_phases"] = [
            {"kill_chain_name": "mitre-attack", "phase_name": phase}
            for phase in sorted(indicator.kill_chain_phases)
        ]
    if indicator.references:
        obj["external_references"] = [
            {"source_name": "reference", "url": url} for url in sorted(set(indicator.references))
        ]
    return obj


# ---- Entity conversion ------------------------------------------------------

def actor_to_stix(name: str, actor: ThreatActor | None = None) -> dict[str, Any]:
    """Convert an actor name (and its stored entity, if known) to a threat-actor SDO."""
    obj: dict[str, Any] = {
        "type": "threat-actor",
        "spec_version": "2.1",
        "id": _deterministic_id("threat-actor", name.lower()),
        "created_by_ref": _TIACE_IDENTITY_ID,
        "created": _ensure_iso(actor.first_activity if actor else None),
        "modified": _ensure_iso(actor.last_activity if actor else None),
        "name": name,
        "threat_actor_types": ["unknown"],
    }
    if actor is not None:
        if actor.aliases:
            obj["aliases"] = sorted(actor.aliases)
        if actor.sophistication:
            obj["sophistication"] = actor.sophistication
        if actor.motivations:
            motivations = sorted(actor.motivations)
            obj["primary_motivation"] = motivations[0]
            if len(motivations) > 1:
                obj["secondary_motivations"] = motivations[1:]
        if actor.description:
            obj["description"] = actor.description
    return obj


def campaign_to_stix(name: str, campaign: Campaign | None = None) -> dict[str, Any]:
    obj: dict[str, Any] = {
        "type": "campaign",
        "spec_version": "2.1",
        "id": _deterministic_id("campaign", name.lower()),
        "created_by_ref": _TIACE_IDENTITY_ID,
        "created": _ensure_iso(campaign.first_seen if campaign else None),
        "modified": _ensure_iso(campaign.last_seen if campaign else None),
        "name": name,
    }
    if campaign is not None and campaign.description:
        obj["description"] = campaign.description
    return obj


def malware_to_stix(family: str) -> dict[str, Any]:
    return {
        "type": "malware",
        "spec_version": "2.1",
        "id": _deterministic_id("malware", family.lower()),
        "created_by_ref": _TIACE_IDENTITY_ID,
        "created": _EPOCH,
        "modified": _EPOCH,
        "name": family,
        "is_family": True,
    }


def _relationship(source_ref: str, target_ref: str, relationship_type: str, created: str) -> dict[str, Any]:
    return {
        "type": "relationship",
        "spec_version": "2.1",
        "id": _deterministic_id("relationship", f"{source_ref}-{relationship_type}-{target_ref}"),
        "created": created,
        "modified": created,
        "relationship_type": relationship_type,
        "source_ref": source_ref,
        "target_ref": target_ref,
    }


# ---- Full bundle builder ----------------------------------------------------

def build_stix_bundle(
    indicators: Iterable[Indicator],
    *,
    actors: dict[str, ThreatActor] | None = None,
    campaigns: dict[str, Campaign] | None = None,
    relationships: Iterable[Relationship] = (),
) -> dict[str, Any]:
    """Build a complete STIX 2.1 Bundle from tenant records.

    Parameters
    ----------
    indicators:
        Indicators in export order.
    actors:
        Stored threat actors keyed by lower-cased name; used to enrich the
        threat-actor objects named by the indicators.
    campaigns:
        Stored campaigns keyed by lower-cased name.
    relationships:
        Edges between exported indicators.  Only identity and relatedness
        edges are carried over.

    Returns
    -------
    dict:
        A STIX 2.1 Bundle (``type: "bundle"``).
    """
    actors = actors or {}
    campaigns = campaigns or {}
    objects: list[dict[str, Any]] = [tiace_identity()]
    entity_objects: dict[str, dict[str, Any]] = {}
    links: list[dict[str, Any]] = []
    stix_ids: dict[str, str] = {}

    for indicator in indicators:
        sdo = indicator_to_stix(indicator)
        objects.append(sdo)
        stix_ids[indicator.indicator_id] = sdo["id"]
        targets: list[dict[str, Any]] = []
        targets.extend(malware_to_stix(f) for f in sorted(indicator.malware_families))
        targets.extend(actor_to_stix(a, actors.get(a.lower())) for a in sorted(indicator.threat_actors))
        targets.extend(campaign_to_stix(c, campaigns.get(c.lower())) for c in sorted(indicator.campaigns))
        for target in targets:
            entity_objects.setdefault(target["id"], target)
            links.append(_relationship(sdo["id"], target["id"], "indicates", sdo["modified"]))

    # Campaign -> actor attribution
    for target in list(entity_objects.values()):
        if target["type"] != "campaign":
            continue
        campaign = campaigns.get(target["name"].lower())
        if campaign is None or not campaign.actor:
            continue
        actor_obj = actor_to_stix(campaign.actor, actors.get(campaign.actor.lower()))
        entity_objects.setdefault(actor_obj["id"], actor_obj)
        links.append(_relationship(target["id"], actor_obj["id"], "attributed-to", target["modified"]))

    for edge in relationships:
        relationship_type = _EXPORTED_EDGES.get(edge.relationship_type)
        source_ref = stix_ids.get(edge.source_id)
        target_ref = stix_ids.get(edge.target_id)
        if relationship_type is None or source_ref is None or target_ref is None:
            continue
        link = _relationship(source_ref, target_ref, relationship_type, _ensure_iso(edge.created_at))
        link["confidence"] = int(round(edge.confidence * 100))
        links.append(link)

    objects.extend(entity_objects[key] for key in sorted(entity_objects))
    unique_links = {link["id"]: link for link in links}
    objects.extend(unique_links[key] for key in sorted(unique_links))

    # Deterministic bundle ID based on content hash
    content_hash = hashlib.sha256(json.dumps(objects, sort_keys=True).encode()).hexdigest()
    bundle_id = f"bundle--{uuid.UUID(content_hash[:32])}"

    return {
        "type": "bundle",
        "id": bundle_id,
        "objects": objects,
    }
