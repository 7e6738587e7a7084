# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""MISP event parser.

Attributes (top level and inside MISP objects) are mapped onto indicator
kinds by their MISP ``type``; composite types such as ``ip-dst|port`` or
``filename|sha256`` keep the observable half.  Unknown attribute types
degrade to ``custom:<type>``.  Galaxy clusters supply actors, malware
families and ATT&CK techniques.
"""

from __future__ import annotations

from typing import Any

from tiace.core.constants import IndicatorKind, Severity
from tiace.core.exceptions import MalformedRecordError, SchemaDriftError
from tiace.models.entities import ThreatActor
from tiace.models.feed import FeedConfiguration, RawRecord
from tiace.models.normalize import custom_kind
from tiace.parsers.base import ParseResult, make_indicator
from tiace.parsers.decode import load_json

_TYPE_KINDS: dict[str, str] = {
    "ip-src": IndicatorKind.IP.value,
    "ip-dst": IndicatorKind.IP.value,
    "domain": IndicatorKind.DOMAIN.value,
    "hostname": IndicatorKind.DOMAIN.value,
    "url": IndicatorKind.URL.value,
    "uri": IndicatorKind.URL.value,
    "md5": IndicatorKind.HASH.value,
    "sha1": IndicatorKind.HASH.value,
    "sha224": IndicatorKind.HASH.value,
    "sha256": IndicatorKind.HASH.value,
    "sha384": IndicatorKind.HASH.value,
    "sha512": IndicatorKind.HASH.value,
    "email": IndicatorKind.EMAIL.value,
    "email-src": IndicatorKind.EMAIL.value,
    "email-dst": IndicatorKind.EMAIL.value,
    "user-agent": IndicatorKind.USER_AGENT.value,
    "mutex": IndicatorKind.MUTEX.value,
    "x509-fingerprint-md5": IndicatorKind.CERTIFICATE.value,
    "x509-fingerprint-sha1": IndicatorKind.CERTIFICATE.value,
    "x509-fingerprint-sha256": IndicatorKind.CERTIFICATE.value,
    "as": IndicatorKind.ASN.value,
}

# Composite "a|b" types: which half is the observable, and its kind.
_COMPOSITE: dict[str, tuple[int, str]] = {
    "ip-src|port": (0, IndicatorKind.IP.value),
    "ip-dst|port": (0, IndicatorKind.IP.value),
    "hostname|port": (0, IndicatorKind.DOMAIN.value),
    "domain|ip": (0, IndicatorKind.DOMAIN.value),
    "filename|md5": (1, IndicatorKind.HASH.value),
    "filename|sha1": (1, IndicatorKind.HASH.value),
    "filename|sha256": (1, IndicatorKind.HASH.value),
    "filename|sha512": (1, IndicatorKind.HASH.value),
}

_THREAT_LEVELS: dict[str, Severity] = {
    "1": Severity.HIGH,
    "2": Severity.MEDIUM,
    "3": Severity.LOW,
    "4": Severity.INFO,
}


def _tag_names(container: dict[str, Any]) -> set[str]:
    names = set()
    for tag in container.get("Tag") or []:
        if isinstance(tag, dict) and tag.get("name"):
            names.add(str(tag["name"]))
    return names


def _galaxy_values(event: dict[str, Any]) -> dict[str, set[str]]:
    found: dict[str, set[str]] = {"actors": set(), "families": set(), "techniques": set()}
    for galaxy in event.get("Galaxy") or []:
        galaxy_type = str(galaxy.get("type", ""))
        for cluster in galaxy.get("GalaxyCluster") or []:
            value = str(cluster.get("value", "")).strip()
            if not value:
                continue
            if galaxy_type in ("threat-actor", "intrusion-set", "mitre-intrusion-set"):
                found["actors"].add(value)
            elif galaxy_type in ("malpedia", "ransomware", "tool", "mitre-malware", "mitre-tool", "backdoor", "banker", "rat", "stealer"):
                found["families"].add(value)
            elif galaxy_type in ("mitre-attack-pattern", "attack-pattern"):
                found["techniques"].add(value.rsplit(" - ", 1)[-1] if " - T" in value else value)
    return found


def _split_attribute(attr_type: str, value: str) -> list[tuple[str, str]]:
    if attr_type in _COMPOSITE:
        index, kind = _COMPOSITE[attr_type]
        parts = value.split("|")
        pairs = [(kind, parts[index])] if len(parts) > index else []
        if attr_type == "domain|ip" and len(parts) == 2:
            pairs.append((IndicatorKind.IP.value, parts[1]))
        return pairs
    if attr_type in ("ip-src", "ip-dst") and "/" in value:
        return [(IndicatorKind.CIDR.value, value)]
    return [(_TYPE_KINDS.get(attr_type) or custom_kind(attr_type), value)]


def _event(payload: Any) -> dict[str, Any]:
    data = load_json(payload)
    if isinstance(data, dict) and isinstance(data.get("Event"), dict):
        return data["Event"]
    if isinstance(data, dict) and ("Attribute" in data or "Object" in data):
        return data
    raise SchemaDriftError("MISP record has no 'Event' member")


def parse_misp_event(event: dict[str, Any], config: FeedConfiguration, result: ParseResult) -> None:
    organization = str((event.get("Orgc") or event.get("Org") or {}).get("name", "")) or None
    severity = _THREAT_LEVELS.get(str(event.get("threat_level_id", "2")), Severity.MEDIUM)
    event_tags = _tag_names(event)
    galaxy = _galaxy_values(event)
    event_date = event.get("date") or event.get("publish_timestamp")
    info = str(event.get("info") or "")

    for actor in sorted(galaxy["actors"]):
        result.actors.append(ThreatActor(tenant_id=config.tenant_id, name=actor, source_feeds={config.feed_id}))

    attributes: list[dict[str, Any]] = list(event.get("Attribute") or [])
    for obj in event.get("Object") or []:
        attributes.extend(obj.get("Attribute") or [])

    for attr in attributes:
        if not isinstance(attr, dict):
            result.fail(MalformedRecordError("MISP attribute is not an object"))
            continue
        attr_type = str(attr.get("type", "")).strip().lower()
        value = str(attr.get("value", "")).strip()
        if not attr_type or not value:
            result.fail(SchemaDriftError(f"MISP attribute {attr.get('uuid', '?')} lacks type or value"))
            continue
        if attr.get("deleted") in (True, "1", 1):
            continue

        to_ids = attr.get("to_ids") in (True, "1", 1)
        confidence = config.reliability if to_ids else config.reliability * 0.5
        for kind, raw_value in _split_attribute(attr_type, value):
            indicator = make_indicator(
                config,
                kind,
                raw_value,
                item=attr,
                confidence=confidence,
                severity=severity,
                first_seen=attr.get("first_seen") or event_date or attr.get("timestamp"),
                last_seen=attr.get("last_seen") or attr.get("timestamp"),
                tags=event_tags | _tag_names(attr),
                actors=galaxy["actors"],
                description=str(attr.get("comment") or info),
                external_ids={"misp_event": str(event.get("uuid", "")), "misp_attribute": str(attr.get("uuid", ""))},
                malware_families=set(galaxy["families"]),
                mitre_techniques=set(galaxy["techniques"]),
            )
            result.emit(indicator, config, organization=organization)


def parse_misp(record: RawRecord, config: FeedConfiguration) -> ParseResult:
    """Parse one MISP event, or a ``restSearch`` response holding several."""
    result = ParseResult()
    data = load_json(record.payload)
    if isinstance(data, dict) and isinstance(data.get("response"), list):
        for item in data["response"]:
            parse_misp_event(_event(item), config, result)
        return result
    parse_misp_event(_event(data), config, result)
    return result
