# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Flat export renderers: canonical JSON array, CSV and YARA."""

from __future__ import annotations

import csv
import io
import json
from collections.abc import Iterable

from tiace.core.constants import IndicatorKind
from tiace.models.indicator import Indicator, format_timestamp
from tiace.models.normalize import hash_algorithm

CSV_HEADER = ("type", "value", "confidence", "severity", "source", "timestamp", "tags")

# YARA hash module function per digest algorithm
_YARA_HASH_FUNCS = {"MD5": "md5", "SHA-1": "sha1", "SHA-256": "sha256"}


def render_json(indicators: Iterable[Indicator]) -> str:
    """Canonical indicator JSON array, one stable document per indicator."""
    payload = [indicator.to_canonical() for indicator in indicators]
    return json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False) + "\n"


def render_csv(indicators: Iterable[Indicator]) -> str:
    """CSV with a fixed header; multi-valued cells are ``;``-joined and sorted."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for indicator in indicators:
        writer.writerow(
            (
                indicator.kind,
                indicator.value,
                f"{indicator.confidence:.4f}",
                indicator.severity.value,
                ";".join(sorted(indicator.source_feeds)),
                format_timestamp(indicator.last_seen),
                ";".join(sorted(indicator.tags)),
            )
        )
    return buffer.getvalue()


def _yara_string(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def yara_rule(indicator: Indicator) -> str | None:
    """One YARA rule matching a file by digest; ``None`` for non-hash kinds.

    The ``hash`` module has no SHA-512 function, so SHA-512 digests are
    not expressible and are left out.
    """
    if indicator.kind != IndicatorKind.HASH.value:
        return None
    func = _YARA_HASH_FUNCS.get(hash_algorithm(indicator.value) or "")
    if func is None:
        return None
    meta = [
        f'        kind = "{func}"',
        f'        severity = "{indicator.severity.value}"',
        f'        confidence = "{indicator.confidence:.4f}"',
        f'        source = "{_yara_string(",".join(sorted(indicator.source_feeds)))}"',
        f'        last_seen = "{format_timestamp(indicator.last_seen)}"',
    ]
    if indicator.malware_families:
        meta.append(f'        family = "{_yara_string(",".join(sorted(indicator.malware_families)))}"')
    return "\n".join(
        [
            f"rule tiace_{func}_{indicator.value}",
            "{",
            "    meta:",
            *meta,
            "    condition:",
            f'        hash.{func}(0, filesize) == "{indicator.value}"',
            "}",
        ]
    )


def render_yara(indicators: Iterable[Indicator]) -> str:
    rules = [rule for rule in (yara_rule(i) for i in indicators) if rule is not None]
    header = 'import "hash"\n'
    if not rules:
        return header
    return header + "\n" + "\n\n".join(rules) + "\n"
