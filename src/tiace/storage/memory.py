# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""In-process storage backend.

Used by tests and by ``TIACE_DB_BACKEND=memory``.  All mutations run
without suspension between the write and the change-feed publish, which
keeps the feed in commit order.  Records are deep-copied on the way in and
out so callers never alias stored state.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any

from tiace.core.constants import ChangeKind, EntityType
from tiace.core.exceptions import ConflictError, NotFoundError
from tiace.models.entities import Relationship
from tiace.models.feed import SyncJob
from tiace.models.indicator import Indicator
from tiace.models.tenant import TenantContext
from tiace.storage.base import (
    EnrichmentRecord,
    Entity,
    HealthStatus,
    IndicatorStore,
    SearchCriteria,
    entity_id_of,
)
from tiace.streaming.changefeed import ChangeFeed


class _TenantData:
    __slots__ = (
        "adjacency",
        "audit",
        "edges",
        "enrichment",
        "entities",
        "feed_states",
        "fingerprints",
        "indicators",
        "jobs",
    )

    def __init__(self) -> None:
        self.indicators: dict[str, Indicator] = {}
        self.fingerprints: dict[bytes, str] = {}
        self.enrichment: dict[str, EnrichmentRecord] = {}
        self.entities: dict[str, Entity] = {}
        self.edges: dict[tuple[str, str, str], Relationship] = {}
        self.adjacency: dict[str, set[tuple[str, str, str]]] = {}
        self.jobs: dict[str, SyncJob] = {}
        self.feed_states: dict[str, dict[str, Any]] = {}
        self.audit: list[dict[str, Any]] = []


class MemoryStore(IndicatorStore):
    backend_name = "memory"

    def __init__(self, changes: ChangeFeed | None = None, *, max_batch_size: int = 500) -> None:
        super().__init__(changes, max_batch_size=max_batch_size)
        self._tenants: dict[str, _TenantData] = {}

    def _data(self, ctx: TenantContext) -> _TenantData:
        data = self._tenants.get(ctx.tenant_id)
        if data is None:
            data = _TenantData()
            self._tenants[ctx.tenant_id] = data
        return data

    # ------------------------------------------------------------------
    # Indicator CRUD
    # ------------------------------------------------------------------

    async def store(self, ctx: TenantContext, indicator: Indicator) -> Indicator:
        data = self._data(ctx)
        record = self._owned(ctx, indicator)
        record.ensure_id()
        fp = record.fingerprint()
        if record.indicator_id in data.indicators or fp in data.fingerprints:
            raise ConflictError(f"Indicator {record.kind}:{record.value} already stored")
        data.indicators[record.indicator_id] = record
        data.fingerprints[fp] = record.indicator_id
        self._emit(ctx, record.indicator_id, ChangeKind.CREATED)
        return record.model_copy(deep=True)

    async def get(self, ctx: TenantContext, indicator_id: str) -> Indicator:
        record = self._data(ctx).indicators.get(indicator_id)
        if record is None:
            raise NotFoundError(f"Indicator not found: {indicator_id}")
        return record.model_copy(deep=True)

    async def get_many(self, ctx: TenantContext, indicator_ids: Iterable[str]) -> list[Indicator]:
        indicators = self._data(ctx).indicators
        return [indicators[i].model_copy(deep=True) for i in indicator_ids if i in indicators]

    async def update(self, ctx: TenantContext, indicator: Indicator) -> Indicator:
        data = self._data(ctx)
        current = data.indicators.get(indicator.indicator_id)
        if current is None:
            raise NotFoundError(f"Indicator not found: {indicator.indicator_id}")
        record = self._owned(ctx, indicator)
        if record.fingerprint() != current.fingerprint():
            raise ConflictError("An update may not change an indicator's kind or value")
        record.last_seen = max(record.last_seen, current.last_seen)
        record.version = current.version + 1
        data.indicators[record.indicator_id] = record
        self._emit(ctx, record.indicator_id, ChangeKind.UPDATED)
        return record.model_copy(deep=True)

    async def delete(self, ctx: TenantContext, indicator_id: str) -> None:
        data = self._data(ctx)
        record = data.indicators.pop(indicator_id, None)
        if record is None:
            raise NotFoundError(f"Indicator not found: {indicator_id}")
        data.fingerprints.pop(record.fingerprint(), None)
        data.enrichment.pop(indicator_id, None)
        self._remove_edges_of(data, indicator_id)
        self._emit(ctx, indicator_id, ChangeKind.DELETED)

    async def bulk_store(self, ctx: TenantContext, indicators: list[Indicator]) -> list[str]:
        self._check_batch(indicators)
        data = self._data(ctx)
        records = [self._owned(ctx, i) for i in indicators]
        for record in records:
            if record.indicator_id in data.indicators or record.fingerprint() in data.fingerprints:
                raise ConflictError(f"Indicator {record.kind}:{record.value} already stored")
        for record in records:
            data.indicators[record.indicator_id] = record
            data.fingerprints[record.fingerprint()] = record.indicator_id
        for record in records:
            self._emit(ctx, record.indicator_id, ChangeKind.CREATED)
        return [r.indicator_id for r in records]

    async def search(self, ctx: TenantContext, criteria: SearchCriteria) -> list[Indicator]:
        data = self._data(ctx)
        if criteria.fingerprint is not None:
            found = data.fingerprints.get(criteria.fingerprint)
            candidates = [data.indicators[found]] if found else []
        else:
            candidates = list(data.indicators.values())
        return [i.model_copy(deep=True) for i in candidates if criteria.matches(i)]

    async def count(self, ctx: TenantContext, criteria: SearchCriteria | None = None) -> int:
        data = self._data(ctx)
        if criteria is None:
            return len(data.indicators)
        return sum(1 for i in data.indicators.values() if criteria.matches(i))

    async def list_ids(self, ctx: TenantContext) -> list[str]:
        return sorted(self._data(ctx).indicators)

    async def find_by_fingerprint(self, ctx: TenantContext, fingerprint: bytes) -> Indicator | None:
        data = self._data(ctx)
        found = data.fingerprints.get(fingerprint)
        return data.indicators[found].model_copy(deep=True) if found else None

    # ------------------------------------------------------------------
    # Enrichment records
    # ------------------------------------------------------------------

    async def store_enrichment(self, ctx: TenantContext, record: EnrichmentRecord) -> None:
        data = self._data(ctx)
        if record.indicator_id not in data.indicators:
            raise NotFoundError(f"Indicator not found: {record.indicator_id}")
        data.enrichment[record.indicator_id] = EnrichmentRecord.from_dict(record.to_dict())

    async def get_enrichment(self, ctx: TenantContext, indicator_id: str) -> EnrichmentRecord:
        record = self._data(ctx).enrichment.get(indicator_id)
        if record is None:
            raise NotFoundError(f"No enrichment for indicator {indicator_id}")
        return EnrichmentRecord.from_dict(record.to_dict())

    async def delete_enrichment(self, ctx: TenantContext, indicator_id: str) -> None:
        if self._data(ctx).enrichment.pop(indicator_id, None) is None:
            raise NotFoundError(f"No enrichment for indicator {indicator_id}")

    # ------------------------------------------------------------------
    # Actors and campaigns
    # ------------------------------------------------------------------

    async def store_entity(self, ctx: TenantContext, entity: Entity) -> None:
        data = self._data(ctx)
        entity_id = entity_id_of(entity)
        created = entity_id not in data.entities
        data.entities[entity_id] = entity.model_copy(update={"tenant_id": ctx.tenant_id}, deep=True)
        self._emit(
            ctx,
            entity_id,
            ChangeKind.CREATED if created else ChangeKind.UPDATED,
            entity.entity_type,
        )

    async def get_entity(self, ctx: TenantContext, entity_id: str) -> Entity:
        entity = self._data(ctx).entities.get(entity_id)
        if entity is None:
            raise NotFoundError(f"Entity not found: {entity_id}")
        return entity.model_copy(deep=True)

    async def list_entities(self, ctx: TenantContext, entity_type: EntityType) -> list[Entity]:
        return [
            e.model_copy(deep=True)
            for e in self._data(ctx).entities.values()
            if e.entity_type is entity_type
        ]

    async def entity_exists(self, ctx: TenantContext, entity_id: str) -> bool:
        data = self._data(ctx)
        return entity_id in data.indicators or entity_id in data.entities

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    async def store_edges(self, ctx: TenantContext, edges: Iterable[Relationship]) -> int:
        data = self._data(ctx)
        batch = [e.model_copy(update={"tenant_id": ctx.tenant_id}) for e in edges]
        for edge in batch:
            for endpoint in (edge.source_id, edge.target_id):
                if endpoint not in data.indicators and endpoint not in data.entities:
                    raise NotFoundError(f"Edge endpoint not found: {endpoint}")
        for edge in batch:
            data.edges[edge.key] = edge
            data.adjacency.setdefault(edge.source_id, set()).add(edge.key)
            data.adjacency.setdefault(edge.target_id, set()).add(edge.key)
        return len(batch)

    async def edges_of(self, ctx: TenantContext, entity_id: str) -> list[Relationship]:
        data = self._data(ctx)
        keys = sorted(data.adjacency.get(entity_id, ()))
        return [data.edges[k].model_copy() for k in keys]

    async def delete_edges(self, ctx: TenantContext, keys: Iterable[tuple[str, str, str]]) -> int:
        data = self._data(ctx)
        removed = 0
        for key in keys:
            if data.edges.pop(key, None) is not None:
                removed += 1
                for endpoint in (key[0], key[1]):
                    data.adjacency.get(endpoint, set()).discard(key)
        return removed

    async def delete_edges_of(self, ctx: TenantContext, entity_id: str) -> list[Relationship]:
        return self._remove_edges_of(self._data(ctx), entity_id)

    async def all_edges(self, ctx: TenantContext) -> list[Relationship]:
        data = self._data(ctx)
        return [data.edges[k].model_copy() for k in sorted(data.edges)]

    @staticmethod
    def _remove_edges_of(data: _TenantData, entity_id: str) -> list[Relationship]:
        removed: list[Relationship] = []
        for key in sorted(data.adjacency.pop(entity_id, set())):
            edge = data.edges.pop(key, None)
            if edge is None:
                continue
            removed.append(edge)
            other = key[1] if key[0] == entity_id else key[0]
            data.adjacency.get(other, set()).discard(key)
        return removed

    # ------------------------------------------------------------------
    # Sync history and audit
    # ------------------------------------------------------------------

    async def save_sync_job(self, ctx: TenantContext, job: SyncJob) -> None:
        self._data(ctx).jobs[job.job_id] = job.model_copy(update={"tenant_id": ctx.tenant_id}, deep=True)

    async def list_sync_jobs(
        self, ctx: TenantContext, *, feed_id: str | None = None, limit: int = 100
    ) -> list[SyncJob]:
        jobs = [
            j for j in self._data(ctx).jobs.values() if feed_id is None or j.feed_id == feed_id
        ]
        jobs.sort(key=lambda j: (j.started_at is not None, j.started_at or datetime.min, j.job_id), reverse=True)
        return [j.model_copy(deep=True) for j in jobs[:limit]]

    async def prune_sync_jobs(self, ctx: TenantContext, before: datetime) -> int:
        data = self._data(ctx)
        stale = [
            job_id
            for job_id, job in data.jobs.items()
            if job.is_terminal and job.ended_at is not None and job.ended_at < before
        ]
        for job_id in stale:
            del data.jobs[job_id]
        return len(stale)

    async def save_feed_state(self, ctx: TenantContext, feed_id: str, state: dict[str, Any]) -> None:
        self._data(ctx).feed_states[feed_id] = dict(state)

    async def load_feed_states(self, ctx: TenantContext) -> dict[str, dict[str, Any]]:
        return {feed_id: dict(state) for feed_id, state in self._data(ctx).feed_states.items()}

    async def append_audit(self, ctx: TenantContext, event: dict[str, Any]) -> None:
        self._data(ctx).audit.append(dict(event))

    async def list_audit(
        self, ctx: TenantContext, *, resource_id: str | None = None, limit: int = 100
    ) -> list[dict[str, Any]]:
        events = [
            e for e in self._data(ctx).audit if resource_id is None or e.get("resource_id") == resource_id
        ]
        return [dict(e) for e in reversed(events[-limit:])]

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health_check(self) -> HealthStatus:
        return HealthStatus(
            healthy=True,
            backend=self.backend_name,
            details={"tenants": len(self._tenants)},
        )

    async def metrics(self, ctx: TenantContext) -> dict[str, int]:
        data = self._data(ctx)
        return {
            "indicators": len(data.indicators),
            "entities": len(data.entities),
            "edges": len(data.edges),
            "enrichment_records": len(data.enrichment),
            "sync_jobs": len(data.jobs),
            "audit_events": len(data.audit),
        }

