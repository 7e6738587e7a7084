# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Parse results and the coercion helpers shared by every format parser.

A parser is a pure function ``(RawRecord, FeedConfiguration) -> ParseResult``.
A record that cannot be read at all raises
:class:`~tiace.core.exceptions.MalformedRecordError` or
:class:`~tiace.core.exceptions.SchemaDriftError`; problems confined to one
item inside a multi-item record are collected in
:attr:`ParseResult.failures` so the rest of the record still imports.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from tiace.core.constants import Severity
from tiace.core.exceptions import ParseError
from tiace.models.entities import Campaign, PendingRelationship, ThreatActor
from tiace.models.feed import FeedConfiguration, RawRecord
from tiace.models.indicator import Attribution, Indicator, parse_timestamp
from tiace.parsers.filters import passes_filters

Parser = Callable[[RawRecord, FeedConfiguration], "ParseResult"]


@dataclass(slots=True)
class ParseResult:
    indicators: list[Indicator] = field(default_factory=list)
    actors: list[ThreatActor] = field(default_factory=list)
    campaigns: list[Campaign] = field(default_factory=list)
    relationships: list[PendingRelationship] = field(default_factory=list)
    skipped: int = 0
    failures: list[ParseError] = field(default_factory=list)

    def emit(
        self,
        indicator: Indicator,
        config: FeedConfiguration,
        *,
        organization: str | None = None,
    ) -> bool:
        """Append *indicator* if it passes the feed filters, else count it skipped."""
        if passes_filters(indicator, config.filters, organization=organization):
            self.indicators.append(indicator)
            return True
        self.skipped += 1
        return False

    def fail(self, error: ParseError) -> None:
        self.failures.append(error)

    def merge(self, other: ParseResult) -> None:
        self.indicators.extend(other.indicators)
        self.actors.extend(other.actors)
        self.campaigns.extend(other.campaigns)
        self.relationships.extend(other.relationships)
        self.skipped += other.skipped
        self.failures.extend(other.failures)


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------

_SEVERITY_ALIASES: dict[str, Severity] = {
    "critical": Severity.CRITICAL,
    "crit": Severity.CRITICAL,
    "severe": Severity.CRITICAL,
    "high": Severity.HIGH,
    "medium": Severity.MEDIUM,
    "moderate": Severity.MEDIUM,
    "med": Severity.MEDIUM,
    "low": Severity.LOW,
    "info": Severity.INFO,
    "informational": Severity.INFO,
    "none": Severity.INFO,
    "unknown": Severity.INFO,
}


def coerce_severity(value: Any, default: Severity = Severity.MEDIUM) -> Severity:
    """Map names and 0-10 scores (CVSS style) onto :class:`Severity`."""
    if value is None or value == "":
        return default
    if isinstance(value, Severity):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        score = float(value)
        if score >= 9.0:
            return Severity.CRITICAL
        if score >= 7.0:
            return Severity.HIGH
        if score >= 4.0:
            return Severity.MEDIUM
        if score > 0.0:
            return Severity.LOW
        return Severity.INFO
    text = str(value).strip().lower()
    if text.startswith("severity:"):
        text = text.partition(":")[2]
    try:
        return coerce_severity(float(text), default)
    except ValueError:
        return _SEVERITY_ALIASES.get(text, default)


def coerce_confidence(value: Any, default: float) -> float:
    """Accept 0..1 fractions and 0..100 percentages; clamp into [0, 1]."""
    if value is None or value == "" or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number > 1.0:
        number /= 100.0
    return min(1.0, max(0.0, number))


def as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    if isinstance(value, str):
        return [v.strip() for v in value.replace(";", ",").split(",") if v.strip()]
    return [value]


def make_indicator(
    config: FeedConfiguration,
    kind: str,
    value: str,
    *,
    item: Any = None,
    confidence: float | None = None,
    severity: Any = None,
    first_seen: Any = None,
    last_seen: Any = None,
    tags: Iterable[str] = (),
    actors: Iterable[str] = (),
    **fields: Any,
) -> Indicator:
    """Build an indicator stamped with the feed's origin.

    Confidence defaults to the feed's reliability.  Every actor name also
    becomes an :class:`Attribution` asserted by this feed.
    """
    conf = config.reliability if confidence is None else confidence
    first = parse_timestamp(first_seen)
    last = parse_timestamp(last_seen) or first
    actor_names = {a.strip() for a in actors if a and a.strip()}
    extra: dict[str, Any] = {}
    if first is not None:
        extra["first_seen"] = first
    if last is not None:
        extra["last_seen"] = last
    return Indicator(
        tenant_id=config.tenant_id,
        kind=kind,
        value=value,
        confidence=conf,
        severity=coerce_severity(severity),
        source_feeds={config.feed_id},
        tags=set(tags),
        raw_payloads={config.feed_id: item} if item is not None else {},
        threat_actors=actor_names,
        attributions=[
            Attribution(actor=name, feed_id=config.feed_id, confidence=conf) for name in sorted(actor_names)
        ],
        **extra,
        **fields,
    )
