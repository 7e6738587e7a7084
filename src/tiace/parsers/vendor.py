# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Commercial vendor JSON parser.

Vendors name the same fields differently; each canonical field is looked
up through a short list of common spellings.  Items missing a value are
schema drift and are counted per item.
"""

from __future__ import annotations

from typing import Any

from tiace.core.exceptions import MalformedRecordError, SchemaDriftError
from tiace.models.feed import FeedConfiguration, RawRecord
from tiace.parsers.base import ParseResult, as_list, coerce_confidence, make_indicator
from tiace.parsers.decode import load_json
from tiace.parsers.extract import infer_kind

_FIELDS: dict[str, tuple[str, ...]] = {
    "kind": ("type", "indicator_type", "ioc_type", "kind"),
    "value": ("value", "indicator", "ioc", "observable"),
    "confidence": ("confidence", "score", "confidence_score"),
    "severity": ("severity", "threat_level", "risk", "risk_level"),
    "first_seen": ("first_seen", "firstSeen", "created", "created_at"),
    "last_seen": ("last_seen", "lastSeen", "updated", "modified", "updated_at"),
    "tags": ("tags", "labels", "categories"),
    "families": ("malware_families", "malware_family", "malware", "family"),
    "actors": ("threat_actors", "threat_actor", "actor", "actors"),
    "campaigns": ("campaigns", "campaign"),
    "description": ("description", "comment", "title"),
    "references": ("references", "reference", "urls"),
}

_KIND_ALIASES: dict[str, str] = {
    "ipv4": "ip",
    "ipv6": "ip",
    "ip-address": "ip",
    "ip_address": "ip",
    "ipv4-addr": "ip",
    "hostname": "domain",
    "fqdn": "domain",
    "domain-name": "domain",
    "uri": "url",
    "md5": "hash",
    "sha1": "hash",
    "sha256": "hash",
    "sha512": "hash",
    "filehash": "hash",
    "file_hash": "hash",
    "email-address": "email",
    "email_address": "email",
    "useragent": "user-agent",
    "user_agent": "user-agent",
    "network": "cidr",
    "subnet": "cidr",
}


def _first(item: dict[str, Any], field: str) -> Any:
    for key in _FIELDS[field]:
        if key in item and item[key] not in (None, ""):
            return item[key]
    return None


def _names(value: Any) -> set[str]:
    names = set()
    for entry in as_list(value):
        if isinstance(entry, dict):
            entry = entry.get("name") or entry.get("value")
        if entry:
            names.add(str(entry).strip())
    return names


def _items(payload: Any) -> list[Any]:
    data = load_json(payload)
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in ("data", "indicators", "results", "items"):
            if isinstance(data.get(key), list):
                return data[key]
        if _first(data, "value") is not None:
            return [data]
    raise SchemaDriftError("Vendor record holds no indicator list")


def parse_vendor_json(record: RawRecord, config: FeedConfiguration) -> ParseResult:
    result = ParseResult()
    for item in _items(record.payload):
        if not isinstance(item, dict):
            result.fail(MalformedRecordError(f"Vendor item is not an object: {str(item)[:80]}"))
            continue
        value = _first(item, "value")
        if value is None:
            result.fail(SchemaDriftError("Vendor item has no indicator value"))
            continue
        value = str(value)
        declared = _first(item, "kind")
        kind = _KIND_ALIASES.get(str(declared).strip().lower(), str(declared)) if declared else infer_kind(value)
        if kind is None:
            result.fail(MalformedRecordError(f"Cannot determine indicator kind for {value[:80]!r}"))
            continue

        indicator = make_indicator(
            config,
            kind,
            value,
            item=item,
            confidence=coerce_confidence(_first(item, "confidence"), config.reliability),
            severity=_first(item, "severity"),
            first_seen=_first(item, "first_seen"),
            last_seen=_first(item, "last_seen"),
            tags={str(t) for t in as_list(_first(item, "tags"))},
            actors=_names(_first(item, "actors")),
            description=str(_first(item, "description") or ""),
            references=[str(r) for r in as_list(_first(item, "references"))],
            malware_families=_names(_first(item, "families")),
            campaigns=_names(_first(item, "campaigns")),
        )
        result.emit(indicator, config, organization=item.get("organization"))
    return result
