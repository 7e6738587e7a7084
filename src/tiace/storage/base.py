# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Backend-neutral storage contract.

Every operation takes a :class:`~tiace.models.tenant.TenantContext`.
Conforming backends guarantee:

* isolation: nothing outside ``ctx.tenant_id`` is read or mutated;
* atomic bulk: :meth:`IndicatorStore.bulk_store` is all-or-nothing;
* monotonic reads: a stored ``last_seen`` never moves backwards;
* bounded batches: callers respect :attr:`IndicatorStore.max_batch_size`.

Committed indicator and entity writes are published to the change feed
in commit order.
"""

from __future__ import annotations

import abc
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from tiace.core.constants import ChangeKind, EntityType, Severity
from tiace.core.exceptions import ValidationError
from tiace.models.entities import Campaign, Relationship, ThreatActor
from tiace.models.feed import SyncJob
from tiace.models.indicator import Indicator, utcnow
from tiace.models.tenant import TenantContext
from tiace.streaming.changefeed import ChangeFeed

Entity = ThreatActor | Campaign


def entity_id_of(entity: Entity) -> str:
    if isinstance(entity, ThreatActor):
        return entity.actor_id
    if isinstance(entity, Campaign):
        return entity.campaign_id
    raise TypeError(f"Unsupported entity type: {type(entity).__name__}")


@dataclass(slots=True)
class SearchCriteria:
    """Backend-level filter.  Ranking and limits are applied by the query surface."""

    text: str = ""
    kinds: set[str] = field(default_factory=set)
    severities: set[Severity] = field(default_factory=set)
    min_confidence: float = 0.0
    start: datetime | None = None
    end: datetime | None = None
    tags: set[str] = field(default_factory=set)
    feeds: set[str] = field(default_factory=set)
    values: set[str] = field(default_factory=set)
    fingerprint: bytes | None = None

    def matches(self, indicator: Indicator) -> bool:
        if self.fingerprint is not None and indicator.fingerprint() != self.fingerprint:
            return False
        if self.kinds and indicator.kind not in self.kinds:
            return False
        if self.values and indicator.value not in self.values:
            return False
        if self.severities and indicator.severity not in self.severities:
            return False
        if indicator.confidence < self.min_confidence:
            return False
        if self.start is not None and indicator.last_seen < self.start:
            return False
        if self.end is not None and indicator.first_seen > self.end:
            return False
        if self.tags and not (self.tags & indicator.tags):
            return False
        if self.feeds and not (self.feeds & indicator.source_feeds):
            return False
        if self.text:
            return text_matches(self.text, indicator)
        return True


def text_matches(text: str, indicator: Indicator) -> bool:
    """Case-insensitive substring match over value and attribution fields."""
    needle = text.strip().lower()
    if not needle:
        return True
    haystacks = [indicator.value.lower(), indicator.description.lower()]
    haystacks.extend(indicator.tags)
    haystacks.extend(f.lower() for f in indicator.malware_families)
    haystacks.extend(a.lower() for a in indicator.threat_actors)
    haystacks.extend(c.lower() for c in indicator.campaigns)
    return any(needle in h for h in haystacks)


@dataclass(slots=True)
class EnrichmentRecord:
    """Per-stage outcome of the enrichment pipeline for one indicator."""

    indicator_id: str
    stages: dict[str, str] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    enriched_at: datetime = field(default_factory=utcnow)

    @property
    def complete(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "indicator_id": self.indicator_id,
            "stages": dict(self.stages),
            "errors": dict(self.errors),
            "enriched_at": self.enriched_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EnrichmentRecord:
        return cls(
            indicator_id=data["indicator_id"],
            stages=dict(data.get("stages") or {}),
            errors=dict(data.get("errors") or {}),
            enriched_at=datetime.fromisoformat(data["enriched_at"]),
        )


@dataclass(slots=True)
class HealthStatus:
    healthy: bool
    backend: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"healthy": self.healthy, "backend": self.backend, **self.details}


class IndicatorStore(abc.ABC):
    """Abstract storage backend for indicators, entities, edges and job history."""

    backend_name: str = "abstract"

    def __init__(self, changes: ChangeFeed | None = None, *, max_batch_size: int = 500) -> None:
        self._changes = changes
        self._max_batch_size = max_batch_size

    @property
    def max_batch_size(self) -> int:
        return self._max_batch_size

    @property
    def changes(self) -> ChangeFeed | None:
        return self._changes

    def attach_change_feed(self, changes: ChangeFeed) -> None:
        self._changes = changes

    def _emit(
        self,
        ctx: TenantContext,
        entity_id: str,
        kind: ChangeKind,
        entity_type: EntityType = EntityType.INDICATOR,
    ) -> None:
        if self._changes is not None:
            self._changes.publish(ctx.tenant_id, entity_id, kind, entity_type)

    def _check_batch(self, indicators: list[Indicator]) -> None:
        if len(indicators) > self._max_batch_size:
            raise ValidationError(
                f"Batch of {len(indicators)} exceeds max_batch_size={self._max_batch_size}"
            )
        seen: set[bytes] = set()
        seen_ids: set[str] = set()
        for indicator in indicators:
            if not indicator.indicator_id:
                raise ValidationError("bulk_store requires minted indicator ids")
            if indicator.indicator_id in seen_ids:
                raise ValidationError(f"Duplicate indicator id in batch: {indicator.indicator_id}")
            seen_ids.add(indicator.indicator_id)
            fp = indicator.fingerprint()
            if fp in seen:
                raise ValidationError(f"Duplicate fingerprint in batch: {indicator.kind}:{indicator.value}")
            seen.add(fp)

    @staticmethod
    def _owned(ctx: TenantContext, indicator: Indicator) -> Indicator:
        """Return a copy of *indicator* stamped with the caller's tenant."""
        return indicator.model_copy(update={"tenant_id": ctx.tenant_id}, deep=True)

    # ------------------------------------------------------------------
    # Indicator CRUD
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def store(self, ctx: TenantContext, indicator: Indicator) -> Indicator:
        """Persist a new indicator.  Raises ``ConflictError`` on a duplicate id or fingerprint."""

    @abc.abstractmethod
    async def get(self, ctx: TenantContext, indicator_id: str) -> Indicator:
        """Return the indicator or raise ``NotFoundError``."""

    @abc.abstractmethod
    async def get_many(self, ctx: TenantContext, indicator_ids: Iterable[str]) -> list[Indicator]:
        """Return the indicators that exist, silently skipping unknown ids."""

    @abc.abstractmethod
    async def update(self, ctx: TenantContext, indicator: Indicator) -> Indicator:
        """Replace an existing indicator, keeping ``last_seen`` monotonic."""

    @abc.abstractmethod
    async def delete(self, ctx: TenantContext, indicator_id: str) -> None:
        """Delete an indicator together with its enrichment and edges."""

    @abc.abstractmethod
    async def bulk_store(self, ctx: TenantContext, indicators: list[Indicator]) -> list[str]:
        """Persist every indicator or none of them."""

    @abc.abstractmethod
    async def search(self, ctx: TenantContext, criteria: SearchCriteria) -> list[Indicator]:
        """Return indicators matching *criteria* in unspecified order."""

    @abc.abstractmethod
    async def count(self, ctx: TenantContext, criteria: SearchCriteria | None = None) -> int: ...

    @abc.abstractmethod
    async def list_ids(self, ctx: TenantContext) -> list[str]: ...

    @abc.abstractmethod
    async def find_by_fingerprint(self, ctx: TenantContext, fingerprint: bytes) -> Indicator | None: ...

    # ------------------------------------------------------------------
    # Enrichment records
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def store_enrichment(self, ctx: TenantContext, record: EnrichmentRecord) -> None: ...

    @abc.abstractmethod
    async def get_enrichment(self, ctx: TenantContext, indicator_id: str) -> EnrichmentRecord:
        """Return the enrichment record or raise ``NotFoundError``."""

    @abc.abstractmethod
    async def delete_enrichment(self, ctx: TenantContext, indicator_id: str) -> None: ...

    # ------------------------------------------------------------------
    # Actors and campaigns
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def store_entity(self, ctx: TenantContext, entity: Entity) -> None: ...

    @abc.abstractmethod
    async def get_entity(self, ctx: TenantContext, entity_id: str) -> Entity: ...

    @abc.abstractmethod
    async def list_entities(self, ctx: TenantContext, entity_type: EntityType) -> list[Entity]: ...

    @abc.abstractmethod
    async def entity_exists(self, ctx: TenantContext, entity_id: str) -> bool:
        """True if *entity_id* names an indicator, actor or campaign in the tenant."""

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def store_edges(self, ctx: TenantContext, edges: Iterable[Relationship]) -> int:
        """Upsert edges keyed by ``(source, target, type)``.

        Both endpoints must already be stored in the tenant.
        """

    @abc.abstractmethod
    async def edges_of(self, ctx: TenantContext, entity_id: str) -> list[Relationship]:
        """Edges where *entity_id* is either endpoint."""

    @abc.abstractmethod
    async def delete_edges(self, ctx: TenantContext, keys: Iterable[tuple[str, str, str]]) -> int: ...

    @abc.abstractmethod
    async def delete_edges_of(self, ctx: TenantContext, entity_id: str) -> list[Relationship]: ...

    @abc.abstractmethod
    async def all_edges(self, ctx: TenantContext) -> list[Relationship]: ...

    # ------------------------------------------------------------------
    # Sync history, feed state and audit
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def save_sync_job(self, ctx: TenantContext, job: SyncJob) -> None: ...

    @abc.abstractmethod
    async def list_sync_jobs(
        self, ctx: TenantContext, *, feed_id: str | None = None, limit: int = 100
    ) -> list[SyncJob]:
        """Most recent first."""

    @abc.abstractmethod
    async def prune_sync_jobs(self, ctx: TenantContext, before: datetime) -> int: ...

    @abc.abstractmethod
    async def save_feed_state(self, ctx: TenantContext, feed_id: str, state: dict[str, Any]) -> None:
        """Persist the scheduler record of one feed so it survives a restart."""

    @abc.abstractmethod
    async def load_feed_states(self, ctx: TenantContext) -> dict[str, dict[str, Any]]:
        """Scheduler records of the tenant, keyed by feed id."""

    @abc.abstractmethod
    async def append_audit(self, ctx: TenantContext, event: dict[str, Any]) -> None: ...

    @abc.abstractmethod
    async def list_audit(
        self, ctx: TenantContext, *, resource_id: str | None = None, limit: int = 100
    ) -> list[dict[str, Any]]: ...

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def health_check(self) -> HealthStatus: ...

    @abc.abstractmethod
    async def metrics(self, ctx: TenantContext) -> dict[str, int]: ...

    async def verify(self) -> None:
        """Raise ``StorageCorruptedError`` if persisted state is unusable."""

    async def close(self) -> None:
        """Release backend resources."""
