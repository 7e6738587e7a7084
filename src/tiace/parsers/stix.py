# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""STIX 2.x bundle and TAXII envelope parser.

Indicator patterns are read with a comparison-expression subset: every
``[object:path = 'value']`` comparison in the pattern yields one indicator.
Observable paths this engine does not model degrade to a ``custom:`` kind
named after the STIX object type instead of failing.  ``threat-actor``,
``intrusion-set`` and ``campaign`` objects become proto-entities, and
``indicates``/``attributed-to`` relationships annotate indicators with
their actors, campaigns and malware families.
"""

from __future__ import annotations

import re
from typing import Any

from tiace.core.constants import IndicatorKind
from tiace.core.exceptions import MalformedRecordError, SchemaDriftError
from tiace.models.entities import Campaign, PendingRelationship, ThreatActor
from tiace.models.feed import FeedConfiguration, RawRecord
from tiace.models.indicator import Attribution, Indicator, parse_timestamp
from tiace.models.normalize import custom_kind
from tiace.parsers.base import ParseResult, as_list, coerce_confidence, coerce_severity, make_indicator
from tiace.parsers.decode import load_json

# [object-type:property.path = 'value'] ; quoted path segments allowed (hashes.'SHA-256')
_COMPARISON_RE = re.compile(
    r"(?P<object>[a-z0-9][a-z0-9-]*):(?P<path>[a-z0-9_.'\-]+)\s*=\s*'(?P<value>(?:[^'\\]|\\.)*)'",
    re.IGNORECASE,
)

_PATH_KINDS: dict[tuple[str, str], str] = {
    ("ipv4-addr", "value"): IndicatorKind.IP.value,
    ("ipv6-addr", "value"): IndicatorKind.IP.value,
    ("domain-name", "value"): IndicatorKind.DOMAIN.value,
    ("url", "value"): IndicatorKind.URL.value,
    ("email-addr", "value"): IndicatorKind.EMAIL.value,
    ("email-message", "sender_ref.value"): IndicatorKind.EMAIL.value,
    ("email-message", "from_ref.value"): IndicatorKind.EMAIL.value,
    ("mutex", "name"): IndicatorKind.MUTEX.value,
    ("autonomous-system", "number"): IndicatorKind.ASN.value,
    ("network-traffic", "extensions.'http-request-ext'.request_header.'user-agent'"): IndicatorKind.USER_AGENT.value,
}

# Relationship types between indicators carried over as pending edges.
_EDGE_TYPES = frozenset({"related-to", "derived-from", "duplicate-of"})


def _kind_for(obj_type: str, path: str, value: str) -> str:
    obj_type = obj_type.lower()
    path = path.lower()
    if obj_type == "file" and path.startswith("hashes"):
        return IndicatorKind.HASH.value
    if obj_type == "x509-certificate" and path.startswith("hashes"):
        return IndicatorKind.CERTIFICATE.value
    if obj_type == "network-traffic" and path.startswith(("dst_ref", "src_ref")):
        return IndicatorKind.CIDR.value if "/" in value else IndicatorKind.IP.value
    if (obj_type in ("ipv4-addr", "ipv6-addr")) and "/" in value:
        return IndicatorKind.CIDR.value
    kind = _PATH_KINDS.get((obj_type, path))
    return kind or custom_kind(obj_type)


def pattern_observables(pattern: str) -> list[tuple[str, str]]:
    """Return ``(kind, raw_value)`` for every comparison in a STIX pattern."""
    observables: list[tuple[str, str]] = []
    for match in _COMPARISON_RE.finditer(pattern):
        value = match.group("value").replace("\\'", "'").replace("\\\\", "\\")
        observables.append((_kind_for(match.group("object"), match.group("path"), value), value))
    return observables


def _objects(payload: Any) -> list[dict[str, Any]]:
    data = load_json(payload)
    if isinstance(data, list):
        return [o for o in data if isinstance(o, dict)]
    if not isinstance(data, dict):
        raise MalformedRecordError("STIX payload is not a JSON object")
    if data.get("type") == "indicator":
        return [data]
    if "objects" not in data:
        raise SchemaDriftError("STIX bundle or TAXII envelope has no 'objects' member")
    objects = data.get("objects") or []
    if not isinstance(objects, list):
        raise MalformedRecordError("STIX 'objects' member is not a list")
    return [o for o in objects if isinstance(o, dict)]


def _indicators_from(obj: dict[str, Any], config: FeedConfiguration, result: ParseResult) -> list[Indicator]:
    pattern = obj.get("pattern")
    if not pattern:
        result.fail(SchemaDriftError(f"STIX indicator {obj.get('id', '?')} has no pattern"))
        return []
    if obj.get("pattern_type", "stix") != "stix":
        return []

    severity: Any = obj.get("x_tiace_severity")
    tags: set[str] = set()
    for label in as_list(obj.get("labels")):
        label = str(label)
        if label.lower().startswith("severity:"):
            severity = severity or label.partition(":")[2]
        else:
            tags.add(label)
    tags.update(str(t) for t in as_list(obj.get("indicator_types")) if t not in ("malicious-activity", "unknown"))

    observables = pattern_observables(pattern)
    declared_kind = obj.get("x_tiace_kind")
    if declared_kind and len(observables) == 1:
        observables = [(str(declared_kind), observables[0][1])]
    if not observables:
        result.fail(MalformedRecordError(f"Unsupported STIX pattern: {pattern[:120]}"))
        return []

    first_seen = obj.get("valid_from") or obj.get("created")
    last_seen = obj.get("modified") or first_seen
    built = []
    for kind, value in observables:
        built.append(
            make_indicator(
                config,
                kind,
                value,
                item=obj,
                confidence=coerce_confidence(obj.get("confidence"), config.reliability),
                severity=coerce_severity(severity),
                first_seen=first_seen,
                last_seen=last_seen,
                tags=tags,
                description=str(obj.get("description") or obj.get("name") or ""),
                external_ids={"stix": obj["id"]} if obj.get("id") else {},
                kill_chain_phases={p.get("phase_name", "") for p in obj.get("kill_chain_phases", []) if isinstance(p, dict)} - {""},
                references=[r["url"] for r in obj.get("external_references", []) if isinstance(r, dict) and r.get("url")],
            )
        )
    return built


def _actor_from(obj: dict[str, Any], config: FeedConfiguration) -> ThreatActor:
    return ThreatActor(
        tenant_id=config.tenant_id,
        name=str(obj.get("name", "")).strip(),
        aliases={str(a) for a in as_list(obj.get("aliases"))},
        sophistication=obj.get("sophistication"),
        motivations={str(m) for m in as_list(obj.get("primary_motivation")) + as_list(obj.get("secondary_motivations"))},
        origin=obj.get("x_origin") or obj.get("country"),
        first_activity=parse_timestamp(obj.get("first_seen")),
        last_activity=parse_timestamp(obj.get("last_seen")),
        source_feeds={config.feed_id},
        description=str(obj.get("description") or ""),
    )


def parse_stix(record: RawRecord, config: FeedConfiguration) -> ParseResult:
    objects = _objects(record.payload)
    result = ParseResult()
    by_id = {o["id"]: o for o in objects if "id" in o}

    indicators_by_ref: dict[str, list[Indicator]] = {}
    campaigns_by_ref: dict[str, Campaign] = {}
    for obj in objects:
        obj_type = obj.get("type")
        if obj_type == "indicator":
            indicators_by_ref[obj.get("id", "")] = _indicators_from(obj, config, result)
        elif obj_type in ("threat-actor", "intrusion-set") and obj.get("name"):
            result.actors.append(_actor_from(obj, config))
        elif obj_type == "campaign" and obj.get("name"):
            campaign = Campaign(
                tenant_id=config.tenant_id,
                name=str(obj["name"]).strip(),
                first_seen=parse_timestamp(obj.get("first_seen")),
                last_seen=parse_timestamp(obj.get("last_seen")),
                source_feeds={config.feed_id},
                description=str(obj.get("description") or ""),
            )
            campaigns_by_ref[obj.get("id", "")] = campaign
            result.campaigns.append(campaign)

    for obj in objects:
        if obj.get("type") != "relationship":
            continue
        rel_type = str(obj.get("relationship_type", "")).lower()
        source, target = obj.get("source_ref", ""), obj.get("target_ref", "")
        target_obj = by_id.get(target, {})
        target_type = target_obj.get("type")
        name = str(target_obj.get("name", "")).strip()

        if rel_type == "attributed-to" and source in campaigns_by_ref and name:
            campaigns_by_ref[source].actor = name
            continue
        for indicator in indicators_by_ref.get(source, []):
            if rel_type != "indicates" or not name:
                break
            if target_type == "malware":
                indicator.malware_families.add(name)
            elif target_type in ("threat-actor", "intrusion-set"):
                indicator.threat_actors.add(name)
                indicator.attributions.append(
                    Attribution(actor=name, feed_id=config.feed_id, confidence=indicator.confidence)
                )
            elif target_type == "campaign":
                indicator.campaigns.add(name)
        if rel_type in _EDGE_TYPES:
            for src in indicators_by_ref.get(source, []):
                for dst in indicators_by_ref.get(target, []):
                    result.relationships.append(
                        PendingRelationship(
                            source=("indicator", src.kind, src.value),
                            target=("indicator", dst.kind, dst.value),
                            relationship_type="same-as" if rel_type == "duplicate-of" else rel_type,
                            confidence=coerce_confidence(obj.get("confidence"), min(src.confidence, dst.confidence)),
                            origin=config.feed_id,
                        )
                    )

    for indicators in indicators_by_ref.values():
        for indicator in indicators:
            result.emit(indicator, config)
    return result
