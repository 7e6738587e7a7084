# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Threat actors, campaigns, relationships and clusters.

Entities reference each other by surrogate id only; the edge store carries
every link so there are no ownership cycles between records.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from tiace.core.constants import CUSTOM_KIND_PREFIX, EntityType, RelationshipType, Severity
from tiace.models.indicator import utcnow

# Stable namespace for derived ids (clusters, relationships).
_ID_NAMESPACE = uuid.UUID("5f1c0e7a-4b1d-4c55-9a57-2f7b3e1d9a41")


def derived_id(*parts: str) -> str:
    return str(uuid.uuid5(_ID_NAMESPACE, "\x1f".join(parts)))


class ThreatActor(BaseModel):
    """A named adversary.  ``aliases`` resolve many-to-one onto ``actor_id``."""

    actor_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str = ""
    name: str
    aliases: set[str] = Field(default_factory=set)
    sophistication: str | None = None
    motivations: set[str] = Field(default_factory=set)
    origin: str | None = None
    first_activity: datetime | None = None
    last_activity: datetime | None = None
    source_feeds: set[str] = Field(default_factory=set)
    description: str = ""

    @property
    def entity_type(self) -> EntityType:
        return EntityType.THREAT_ACTOR

    def all_names(self) -> set[str]:
        return {self.name.strip().lower()} | {a.strip().lower() for a in self.aliases}


class Campaign(BaseModel):
    """A bounded operation attributed to one actor."""

    campaign_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str = ""
    name: str
    actor: str | None = None
    first_seen: datetime | None = None
    last_seen: datetime | None = None
    ttps: set[str] = Field(default_factory=set)
    malware_families: set[str] = Field(default_factory=set)
    targets: set[str] = Field(default_factory=set)
    impact: str | None = None
    source_feeds: set[str] = Field(default_factory=set)
    description: str = ""

    @property
    def entity_type(self) -> EntityType:
        return EntityType.CAMPAIGN


def custom_relationship(tag: str) -> str:
    return f"{CUSTOM_KIND_PREFIX}{tag.strip().lower()}"


class Relationship(BaseModel):
    """A typed, directed edge between two entity ids.

    ``rule_id`` records the correlation rule that produced the edge (0 for
    edges asserted by feeds or enrichment) and drives tie-breaks.
    """

    tenant_id: str = ""
    source_id: str
    target_id: str
    relationship_type: str
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    rule_id: int = 0
    origin: str = ""
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("relationship_type", mode="before")
    @classmethod
    def _relationship_type(cls, v: object) -> str:
        text = str(v).strip().lower().replace("_", "-")
        try:
            return RelationshipType(text).value
        except ValueError:
            if text.startswith(CUSTOM_KIND_PREFIX):
                return text
            return custom_relationship(text)

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.source_id, self.target_id, self.relationship_type)

    @property
    def edge_id(self) -> str:
        return derived_id(self.tenant_id, *self.key)

    def reversed(self) -> Relationship:
        return self.model_copy(update={"source_id": self.target_id, "target_id": self.source_id})


class PendingRelationship(BaseModel):
    """An edge whose endpoints are still expressed as natural keys.

    Parsers and enrichment emit these before dedup has resolved ids.
    Endpoints are ``("indicator", kind, value)`` or ``("actor", name)`` /
    ``("campaign", name)`` tuples.
    """

    source: tuple[str, ...]
    target: tuple[str, ...]
    relationship_type: str
    confidence: float = 0.5
    origin: str = ""


class Cluster(BaseModel):
    """An equivalence class of entities joined by strong edges."""

    cluster_id: str
    tenant_id: str
    members: list[str]
    representative: str
    severity: Severity | None = None
    confidence: float | None = None

    @staticmethod
    def id_for(tenant_id: str, representative: str) -> str:
        return derived_id("cluster", tenant_id, representative)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cluster_id": self.cluster_id,
            "members": list(self.members),
            "representative": self.representative,
            "severity": self.severity.value if self.severity else None,
            "confidence": self.confidence,
            "size": len(self.members),
        }
