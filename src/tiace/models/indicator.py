# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Canonical indicator model and its stable JSON representation."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from tiace.core.constants import SEVERITY_ORDER, Severity
from tiace.models.normalize import canonical_kind, fingerprint, normalize


def utcnow() -> datetime:
    return datetime.now(UTC)


def format_timestamp(value: datetime) -> str:
    """RFC 3339 with second precision and a ``Z`` suffix."""
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an RFC 3339 string, epoch seconds, or datetime into aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=UTC)
    text = str(value).strip()
    if text.isdigit():
        return datetime.fromtimestamp(float(text), tz=UTC)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    if len(text) == 10:
        text = f"{text}T00:00:00+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class GeoInfo(BaseModel):
    country: str | None = None
    city: str | None = None
    latitude: float | None = None
    longitude: float | None = None


class IndicatorContext(BaseModel):
    """Network and observation context resolved for an indicator."""

    geo: GeoInfo | None = None
    asn: str | None = None
    organization: str | None = None
    ports: list[int] = Field(default_factory=list)
    protocols: list[str] = Field(default_factory=list)
    hashes: list[str] = Field(
        default_factory=list,
        description="File hashes observed together with this indicator",
    )


class Scoring(BaseModel):
    threat: float = 0.0
    reputation: float = 0.0
    prevalence: float = 0.0
    freshness: float = 0.0
    ml_confidence: float | None = None
    human_validated: bool | None = None


class Attribution(BaseModel):
    """An actor attribution asserted by one feed."""

    actor: str
    feed_id: str
    confidence: float = Field(ge=0.0, le=1.0)
    actor_id: str | None = None


class Indicator(BaseModel):
    """A single normalized observable owned by one tenant.

    ``kind`` plus normalized ``value`` identify the indicator within its
    tenant; :meth:`fingerprint` is the content address used by dedup.
    """

    indicator_id: str = ""
    tenant_id: str = ""
    kind: str
    value: str
    first_seen: datetime = Field(default_factory=utcnow)
    last_seen: datetime = Field(default_factory=utcnow)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    severity: Severity = Severity.MEDIUM
    source_feeds: set[str] = Field(default_factory=set)
    tags: set[str] = Field(default_factory=set)
    context: IndicatorContext = Field(default_factory=IndicatorContext)
    scoring: Scoring = Field(default_factory=Scoring)
    raw_payloads: dict[str, Any] = Field(default_factory=dict)

    description: str = ""
    references: list[str] = Field(default_factory=list)
    external_ids: dict[str, str] = Field(default_factory=dict)
    malware_families: set[str] = Field(default_factory=set)
    threat_actors: set[str] = Field(default_factory=set)
    campaigns: set[str] = Field(default_factory=set)
    kill_chain_phases: set[str] = Field(default_factory=set)
    mitre_techniques: set[str] = Field(default_factory=set)
    attributions: list[Attribution] = Field(default_factory=list)
    first_seen_trusted: bool = False
    version: int = 0

    @field_validator("kind", mode="before")
    @classmethod
    def _canonical_kind(cls, v: object) -> str:
        return canonical_kind(str(v))

    @field_validator("first_seen", "last_seen", mode="before")
    @classmethod
    def _parse_times(cls, v: object) -> object:
        parsed = parse_timestamp(v)
        return parsed if parsed is not None else v

    @field_validator("severity", mode="before")
    @classmethod
    def _lower_severity(cls, v: object) -> object:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("tags", mode="before")
    @classmethod
    def _clean_tags(cls, v: object) -> object:
        if isinstance(v, (list, set, tuple, frozenset)):
            return {str(t).strip().lower() for t in v if str(t).strip()}
        return v

    @model_validator(mode="after")
    def _normalize_and_order(self) -> Indicator:
        normalized = normalize(self.kind, self.value)
        if normalized != self.value:
            self.value = normalized
        if self.first_seen > self.last_seen:
            self.last_seen = self.first_seen
        return self

    def fingerprint(self) -> bytes:
        return fingerprint(self.kind, self.value)

    @property
    def severity_rank(self) -> int:
        return SEVERITY_ORDER[self.severity]

    @property
    def rank_score(self) -> float:
        return self.confidence * self.scoring.threat

    def ensure_id(self) -> str:
        if not self.indicator_id:
            self.indicator_id = str(uuid.uuid4())
        return self.indicator_id

    def to_canonical(self) -> dict[str, Any]:
        """Return the stable canonical JSON shape (sorted sets, RFC 3339 times)."""
        geo = self.context.geo.model_dump(exclude_none=True) if self.context.geo else None
        return {
            "id": self.indicator_id,
            "kind": self.kind,
            "value": self.value,
            "confidence": round(self.confidence, 6),
            "severity": self.severity.value,
            "first_seen": format_timestamp(self.first_seen),
            "last_seen": format_timestamp(self.last_seen),
            "source_feeds": sorted(self.source_feeds),
            "tags": sorted(self.tags),
            "context": {
                "geo": geo,
                "asn": self.context.asn,
                "ports": sorted(self.context.ports),
                "protocols": sorted(self.context.protocols),
            },
            "scoring": {
                "threat": round(self.scoring.threat, 6),
                "reputation": round(self.scoring.reputation, 6),
                "prevalence": round(self.scoring.prevalence, 6),
                "freshness": round(self.scoring.freshness, 6),
            },
        }

    @classmethod
    def from_canonical(cls, data: dict[str, Any]) -> Indicator:
        context = data.get("context") or {}
        scoring = data.get("scoring") or {}
        return cls(
            indicator_id=data.get("id", ""),
            kind=data["kind"],
            value=data["value"],
            confidence=float(data.get("confidence", 0.5)),
            severity=Severity(str(data.get("severity", "medium")).lower()),
            first_seen=data.get("first_seen") or utcnow(),
            last_seen=data.get("last_seen") or data.get("first_seen") or utcnow(),
            source_feeds=set(data.get("source_feeds") or []),
            tags=set(data.get("tags") or []),
            context=IndicatorContext(
                geo=GeoInfo(**context["geo"]) if context.get("geo") else None,
                asn=context.get("asn"),
                ports=list(context.get("ports") or []),
                protocols=list(context.get("protocols") or []),
            ),
            scoring=Scoring(
                threat=float(scoring.get("threat", 0.0)),
                reputation=float(scoring.get("reputation", 0.0)),
                prevalence=float(scoring.get("prevalence", 0.0)),
                freshness=float(scoring.get("freshness", 0.0)),
            ),
        )
