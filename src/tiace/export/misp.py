# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""MISP event generation.

One export produces one MISP event whose attributes are the exported
indicators.  Attribute and event uuids are UUID-5 values over content,
and the event date and timestamp come from the newest indicator, so the
same snapshot always renders the same event.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from typing import Any

from tiace.core.constants import SEVERITY_ORDER, IndicatorKind, Severity
from tiace.models.indicator import Indicator
from tiace.models.normalize import hash_algorithm, is_custom_kind

_MISP_NAMESPACE = uuid.UUID("6c1b3f64-0c8e-5d37-8a0f-3e52d1f7b2a9")

# (attribute type, category) per kind
_KIND_TYPES: dict[str, tuple[str, str]] = {
    IndicatorKind.IP.value: ("ip-dst", "Network activity"),
    IndicatorKind.CIDR.value: ("ip-dst", "Network activity"),
    IndicatorKind.DOMAIN.value: ("domain", "Network activity"),
    IndicatorKind.URL.value: ("url", "Network activity"),
    IndicatorKind.EMAIL.value: ("email-src", "Payload delivery"),
    IndicatorKind.USER_AGENT.value: ("user-agent", "Network activity"),
    IndicatorKind.MUTEX.value: ("mutex", "Artifacts dropped"),
    IndicatorKind.ASN.value: ("AS", "Network activity"),
}

_HASH_TYPES = {"MD5": "md5", "SHA-1": "sha1", "SHA-256": "sha256", "SHA-512": "sha512"}
_CERT_TYPES = {"MD5": "x509-fingerprint-md5", "SHA-1": "x509-fingerprint-sha1", "SHA-256": "x509-fingerprint-sha256"}

_THREAT_LEVEL = {
    Severity.CRITICAL: "1",
    Severity.HIGH: "1",
    Severity.MEDIUM: "2",
    Severity.LOW: "3",
    Severity.INFO: "4",
}


def _uuid(*parts: str) -> str:
    return str(uuid.uuid5(_MISP_NAMESPACE, "\x1f".join(parts)))


def attribute_type(indicator: Indicator) -> tuple[str, str]:
    """Return the MISP ``(type, category)`` for an indicator."""
    if indicator.kind == IndicatorKind.HASH.value:
        return _HASH_TYPES.get(hash_algorithm(indicator.value) or "", "sha256"), "Payload delivery"
    if indicator.kind == IndicatorKind.CERTIFICATE.value:
        return _CERT_TYPES.get(hash_algorithm(indicator.value) or "", "x509-fingerprint-sha256"), "Network activity"
    if is_custom_kind(indicator.kind):
        return indicator.kind.partition(":")[2], "Other"
    return _KIND_TYPES.get(indicator.kind, ("text", "Other"))


def indicator_to_attribute(indicator: Indicator) -> dict[str, Any]:
    attr_type, category = attribute_type(indicator)
    attribute: dict[str, Any] = {
        "uuid": _uuid(indicator.kind, indicator.value),
        "type": attr_type,
        "category": category,
        "value": indicator.value,
        "to_ids": indicator.confidence >= 0.5,
        "first_seen": indicator.first_seen.strftime("%Y-%m-%dT%H:%M:%SZ"),
        "last_seen": indicator.last_seen.strftime("%Y-%m-%dT%H:%M:%SZ"),
        "timestamp": str(int(indicator.last_seen.timestamp())),
        "Tag": [{"name": tag} for tag in sorted(indicator.tags)],
    }
    if indicator.description:
        attribute["comment"] = indicator.description
    return attribute


def _galaxy(galaxy_type: str, name: str, values: Iterable[str]) -> dict[str, Any]:
    return {
        "type": galaxy_type,
        "name": name,
        "GalaxyCluster": [{"value": value, "type": galaxy_type} for value in sorted(values)],
    }


def build_misp_event(
    tenant_id: str,
    indicators: list[Indicator],
    *,
    info: str = "TIACE indicator export",
) -> dict[str, Any]:
    """Build a MISP event (``{"Event": {...}}``) from exported indicators.

    The event threat level follows the most severe indicator; actors and
    malware families named by any indicator become galaxy clusters.
    """
    attributes = [indicator_to_attribute(i) for i in indicators]
    worst = max((i.severity for i in indicators), key=SEVERITY_ORDER.__getitem__, default=Severity.INFO)
    newest = max((i.last_seen for i in indicators), default=None)
    actors = {a for i in indicators for a in i.threat_actors}
    families = {f for i in indicators for f in i.malware_families}

    galaxies = []
    if actors:
        galaxies.append(_galaxy("threat-actor", "Threat Actor", actors))
    if families:
        galaxies.append(_galaxy("malpedia", "Malpedia", families))

    event: dict[str, Any] = {
        "uuid": _uuid(tenant_id, info, *(a["uuid"] for a in attributes)),
        "info": info,
        "date": newest.strftime("%Y-%m-%d") if newest else "1970-01-01",
        "timestamp": str(int(newest.timestamp())) if newest else "0",
        "threat_level_id": _THREAT_LEVEL[worst],
        "analysis": "2",
        "distribution": "0",
        "published": False,
        "Orgc": {"name": tenant_id},
        "Attribute": attributes,
        "Galaxy": galaxies,
    }
    return {"Event": event}
