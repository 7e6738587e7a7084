# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""CVE JSON parser (NVD API 2.0 responses and CVE JSON 5 records).

Each vulnerability becomes a ``custom:cve`` indicator whose severity comes
from the highest available CVSS base severity.
"""

from __future__ import annotations

from typing import Any

from tiace.core.exceptions import MalformedRecordError, SchemaDriftError
from tiace.models.feed import FeedConfiguration, RawRecord
from tiace.models.normalize import custom_kind
from tiace.parsers.base import ParseResult, coerce_severity, make_indicator
from tiace.parsers.decode import load_json

CVE_KIND = custom_kind("cve")

_METRIC_KEYS = ("cvssMetricV40", "cvssMetricV31", "cvssMetricV30", "cvssMetricV2")


def _english(descriptions: list[dict[str, Any]]) -> str:
    for entry in descriptions or []:
        if entry.get("lang", "en").startswith("en"):
            return str(entry.get("value", ""))
    return ""


def _cwes(cve: dict[str, Any]) -> set[str]:
    found = set()
    for weakness in cve.get("weaknesses") or []:
        for entry in weakness.get("description") or []:
            value = str(entry.get("value", "")).strip().lower()
            if value.startswith("cwe-"):
                found.add(value)
    return found


def _nvd_severity(metrics: dict[str, Any]) -> Any:
    for key in _METRIC_KEYS:
        for metric in metrics.get(key) or []:
            data = metric.get("cvssData") or {}
            severity = data.get("baseSeverity") or metric.get("baseSeverity")
            if severity:
                return severity
            if data.get("baseScore") is not None:
                return float(data["baseScore"])
    return None


def _from_nvd(cve: dict[str, Any], config: FeedConfiguration, result: ParseResult) -> None:
    cve_id = cve.get("id")
    if not cve_id:
        result.fail(SchemaDriftError("NVD vulnerability without an id"))
        return
    indicator = make_indicator(
        config,
        CVE_KIND,
        str(cve_id).upper(),
        item={"id": cve_id, "status": cve.get("vulnStatus")},
        severity=coerce_severity(_nvd_severity(cve.get("metrics") or {})),
        first_seen=cve.get("published"),
        last_seen=cve.get("lastModified"),
        tags={"cve"} | _cwes(cve),
        description=_english(cve.get("descriptions") or []),
        references=sorted({str(r["url"]) for r in cve.get("references") or [] if r.get("url")}),
        external_ids={"cve": str(cve_id).upper()},
    )
    result.emit(indicator, config)


def _from_cve5(record: dict[str, Any], config: FeedConfiguration, result: ParseResult) -> None:
    meta = record.get("cveMetadata") or {}
    cve_id = meta.get("cveId")
    if not cve_id:
        result.fail(SchemaDriftError("CVE record without cveMetadata.cveId"))
        return
    cna = (record.get("containers") or {}).get("cna") or {}
    severity = None
    for metric in cna.get("metrics") or []:
        for value in metric.values():
            if isinstance(value, dict) and (value.get("baseSeverity") or value.get("baseScore") is not None):
                severity = value.get("baseSeverity") or value.get("baseScore")
                break
        if severity is not None:
            break
    indicator = make_indicator(
        config,
        CVE_KIND,
        str(cve_id).upper(),
        item={"id": cve_id, "state": meta.get("state")},
        severity=coerce_severity(severity),
        first_seen=meta.get("datePublished"),
        last_seen=meta.get("dateUpdated"),
        tags={"cve"},
        description=_english(cna.get("descriptions") or []),
        references=sorted({str(r["url"]) for r in cna.get("references") or [] if r.get("url")}),
        external_ids={"cve": str(cve_id).upper()},
    )
    result.emit(indicator, config)


def parse_cve(record: RawRecord, config: FeedConfiguration) -> ParseResult:
    data = load_json(record.payload)
    result = ParseResult()
    if isinstance(data, dict) and isinstance(data.get("vulnerabilities"), list):
        for entry in data["vulnerabilities"]:
            cve = entry.get("cve") if isinstance(entry, dict) else None
            if not isinstance(cve, dict):
                result.fail(MalformedRecordError("NVD vulnerability entry has no 'cve' object"))
                continue
            _from_nvd(cve, config, result)
        return result
    if isinstance(data, dict) and "cveMetadata" in data:
        _from_cve5(data, config, result)
        return result
    if isinstance(data, list):
        for item in data:
            if isinstance(item, dict) and "cveMetadata" in item:
                _from_cve5(item, config, result)
            else:
                result.fail(MalformedRecordError("List item is not a CVE record"))
        return result
    raise SchemaDriftError("CVE payload has neither 'vulnerabilities' nor 'cveMetadata'")
