# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Tenant-scoped query surface: search, hunt, change feed and aggregates.

Every operation checks the caller's tenant against the tenant named by the
request, requires ``read`` (``write`` for deletion) and runs under a
deadline; a backend that stalls surfaces as
:class:`~tiace.core.exceptions.DeadlineExceededError` instead of blocking.
"""

from __future__ import annotations

import logging
from collections import Counter, deque
from collections.abc import Awaitable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

from tiace.audit.logger import AuditLogger
from tiace.core.config import Settings
from tiace.core.constants import TOP_N_DEFAULT, EntityType, Permission, Severity
from tiace.core.deadlines import with_deadline
from tiace.core.exceptions import NotFoundError, ValidationError
from tiace.correlation.engine import CorrelationEngine
from tiace.identity.actors import ActorDirectory
from tiace.identity.resolver import IdentityResolver
from tiace.models.indicator import Indicator, format_timestamp
from tiace.models.tenant import TenantContext
from tiace.storage.base import EnrichmentRecord, IndicatorStore, SearchCriteria, entity_id_of
from tiace.streaming.changefeed import ChangeEvent, ChangeFeed, Subscription

logger = logging.getLogger("tiace.query")

T = TypeVar("T")

MAX_SEARCH_LIMIT = 10_000
MAX_HUNT_LINKED = 1_000


# ---------------------------------------------------------------------------
# Requests and results
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class SearchRequest:
    """A filtered search.  ``tenant_id``, when set, must be the caller's tenant."""

    text: str = ""
    tenant_id: str | None = None
    kinds: set[str] = field(default_factory=set)
    severities: set[Severity] = field(default_factory=set)
    min_confidence: float = 0.0
    start: datetime | None = None
    end: datetime | None = None
    tags: set[str] = field(default_factory=set)
    feeds: set[str] = field(default_factory=set)
    limit: int | None = None

    def criteria(self) -> SearchCriteria:
        if not 0.0 <= self.min_confidence <= 1.0:
            raise ValidationError("min_confidence must be within [0, 1]")
        if self.start is not None and self.end is not None and self.start > self.end:
            raise ValidationError("start must not be after end")
        return SearchCriteria(
            text=self.text,
            kinds=set(self.kinds),
            severities=set(self.severities),
            min_confidence=self.min_confidence,
            start=self.start,
            end=self.end,
            tags={t.lower() for t in self.tags},
            feeds=set(self.feeds),
        )


def rank_key(indicator: Indicator) -> tuple[float, float, str]:
    """``confidence x threat`` desc, then ``last_seen`` desc, then id asc."""
    return (-indicator.rank_score, -indicator.last_seen.timestamp(), indicator.indicator_id)


@dataclass(slots=True)
class PathStep:
    source_id: str
    relationship_type: str
    target_id: str
    confidence: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "relationship_type": self.relationship_type,
            "target_id": self.target_id,
            "confidence": round(self.confidence, 6),
        }


@dataclass(slots=True)
class LinkedEntity:
    """An entity reached from a direct hit; ``path`` leads from that hit to it."""

    entity_id: str
    entity_type: EntityType
    depth: int
    path: list[PathStep]
    record: dict[str, Any]
    cluster_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "entity_type": self.entity_type.value,
            "depth": self.depth,
            "path": [step.to_dict() for step in self.path],
            "record": self.record,
            "cluster_id": self.cluster_id,
        }


@dataclass(slots=True)
class HuntResult:
    hits: list[Indicator]
    linked: list[LinkedEntity]
    depth: int
    clusters: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "depth": self.depth,
            "hits": [
                {**hit.to_canonical(), "cluster_id": self.clusters.get(hit.indicator_id)} for hit in self.hits
            ],
            "linked": [entity.to_dict() for entity in self.linked],
        }


@dataclass(slots=True)
class ChangePage:
    events: list[ChangeEvent]
    watermark: int
    lagged: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "events": [e.to_dict() for e in self.events],
            "watermark": self.watermark,
            "lagged": self.lagged,
        }


@dataclass(slots=True)
class Aggregates:
    total: int
    by_kind: dict[str, int]
    by_severity: dict[str, int]
    by_feed: dict[str, int]
    top_malware_families: list[tuple[str, int]]
    top_actors: list[tuple[str, int]]
    cluster_count: int
    sync_history: list[dict[str, Any]]

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "by_kind": self.by_kind,
            "by_severity": self.by_severity,
            "by_feed": self.by_feed,
            "top_malware_families": [{"name": n, "count": c} for n, c in self.top_malware_families],
            "top_actors": [{"name": n, "count": c} for n, c in self.top_actors],
            "cluster_count": self.cluster_count,
            "sync_history": self.sync_history,
        }


def _top(counter: Counter[str], n: int) -> list[tuple[str, int]]:
    return sorted(counter.items(), key=lambda item: (-item[1], item[0]))[:n]


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class QueryService:
    def __init__(
        self,
        store: IndicatorStore,
        changes: ChangeFeed,
        *,
        correlation: CorrelationEngine | None = None,
        directory: ActorDirectory | None = None,
        resolver: IdentityResolver | None = None,
        audit: AuditLogger | None = None,
        timeout: float | None = 10.0,
        max_depth: int = 3,
        default_limit: int = 100,
    ) -> None:
        self._store = store
        self._changes = changes
        self._correlation = correlation
        self._directory = directory
        self._resolver = resolver
        self._audit = audit
        self._timeout = timeout
        self._max_depth = max_depth
        self._default_limit = default_limit

    @classmethod
    def from_settings(cls, store: IndicatorStore, changes: ChangeFeed, settings: Settings, **components: Any) -> QueryService:
        return cls(
            store,
            changes,
            timeout=settings.query_timeout_seconds,
            max_depth=settings.hunt_max_depth,
            default_limit=settings.default_search_limit,
            **components,
        )

    async def _bounded(self, aw: Awaitable[T], operation: str, timeout: float | None) -> T:
        return await with_deadline(aw, timeout if timeout is not None else self._timeout, operation=operation)

    def _limit(self, requested: int | None) -> int:
        limit = self._default_limit if requested is None else requested
        if limit <= 0:
            raise ValidationError("limit must be positive")
        return min(limit, MAX_SEARCH_LIMIT)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(
        self, ctx: TenantContext, request: SearchRequest, *, timeout: float | None = None
    ) -> list[Indicator]:
        """Ranked indicators matching *request*."""
        ctx.require(Permission.READ)
        ctx.check_tenant(request.tenant_id)
        criteria = request.criteria()
        limit = self._limit(request.limit)
        found = await self._bounded(self._store.search(ctx, criteria), "search", timeout)
        return sorted(found, key=rank_key)[:limit]

    # ------------------------------------------------------------------
    # Hunt
    # ------------------------------------------------------------------

    async def hunt(
        self,
        ctx: TenantContext,
        request: SearchRequest,
        *,
        depth: int | None = None,
        timeout: float | None = None,
    ) -> HuntResult:
        """Search, then walk the correlation graph outward from every hit.

        Traversal is breadth-first with neighbours visited in edge-key
        order, so each linked entity carries the shortest path from the
        first hit that reaches it.  Depth is capped by ``hunt_max_depth``.
        An actor whose name or alias equals the query text is a starting
        point as well.
        """
        ctx.require(Permission.READ)
        ctx.check_tenant(request.tenant_id)
        if depth is not None and depth < 0:
            raise ValidationError("depth must not be negative")
        bounded_depth = min(self._max_depth if depth is None else depth, self._max_depth)
        return await self._bounded(self._hunt(ctx, request, bounded_depth), "hunt", timeout)

    async def _hunt(self, ctx: TenantContext, request: SearchRequest, depth: int) -> HuntResult:
        hits = sorted(await self._store.search(ctx, request.criteria()), key=rank_key)[: self._limit(request.limit)]
        starts = [hit.indicator_id for hit in hits]
        if self._directory is not None and request.text.strip():
            actor_id = await self._directory.lookup_actor(ctx, request.text)
            if actor_id is not None:
                starts.append(actor_id)

        seen: set[str] = set(starts)
        paths: dict[str, list[PathStep]] = {start: [] for start in starts}
        queue: deque[tuple[str, int]] = deque((start, 0) for start in starts)
        reached: list[tuple[str, int]] = []
        while queue and len(reached) < MAX_HUNT_LINKED:
            entity_id, level = queue.popleft()
            if level >= depth:
                continue
            for edge in await self._store.edges_of(ctx, entity_id):
                neighbour = edge.target_id if edge.source_id == entity_id else edge.source_id
                if neighbour in seen:
                    continue
                seen.add(neighbour)
                step = PathStep(edge.source_id, edge.relationship_type, edge.target_id, edge.confidence)
                paths[neighbour] = [*paths[entity_id], step]
                reached.append((neighbour, level + 1))
                queue.append((neighbour, level + 1))

        snapshot = await self._correlation.snapshot(ctx) if self._correlation is not None else None
        linked: list[LinkedEntity] = []
        if reached:
            indicators = {i.indicator_id: i for i in await self._store.get_many(ctx, [e for e, _ in reached])}
        else:
            indicators = {}
        for entity_id, level in reached:
            described = await self._describe_entity(ctx, entity_id, indicators)
            if described is None:
                continue
            entity_type, record = described
            linked.append(
                LinkedEntity(
                    entity_id=entity_id,
                    entity_type=entity_type,
                    depth=level,
                    path=paths[entity_id],
                    record=record,
                    cluster_id=snapshot.cluster_of(entity_id) if snapshot is not None else None,
                )
            )

        clusters: dict[str, str] = {}
        if snapshot is not None:
            for hit in hits:
                cluster_id = snapshot.cluster_of(hit.indicator_id)
                if cluster_id is not None:
                    clusters[hit.indicator_id] = cluster_id
        logger.debug(
            "Hunt %r: %d hits, %d linked at depth %d",
            request.text,
            len(hits),
            len(linked),
            depth,
            extra={"tenant_id": ctx.tenant_id},
        )
        return HuntResult(hits=hits, linked=linked, depth=depth, clusters=clusters)

    async def _describe_entity(
        self, ctx: TenantContext, entity_id: str, indicators: dict[str, Indicator]
    ) -> tuple[EntityType, dict[str, Any]] | None:
        indicator = indicators.get(entity_id)
        if indicator is not None:
            return EntityType.INDICATOR, indicator.to_canonical()
        try:
            entity = await self._store.get_entity(ctx, entity_id)
        except NotFoundError:
            # Edge endpoint deleted after traversal.
            return None
        return entity.entity_type, {"id": entity_id_of(entity), **entity.model_dump(mode="json", exclude={"tenant_id"})}

    # ------------------------------------------------------------------
    # Single indicators
    # ------------------------------------------------------------------

    async def get(self, ctx: TenantContext, indicator_id: str, *, timeout: float | None = None) -> Indicator:
        ctx.require(Permission.READ)
        return await self._bounded(self._store.get(ctx, indicator_id), "get", timeout)

    async def detail(self, ctx: TenantContext, indicator_id: str, *, timeout: float | None = None) -> dict[str, Any]:
        """An indicator with its enrichment record, edges and cluster."""
        ctx.require(Permission.READ)
        return await self._bounded(self._detail(ctx, indicator_id), "detail", timeout)

    async def _detail(self, ctx: TenantContext, indicator_id: str) -> dict[str, Any]:
        indicator = await self._store.get(ctx, indicator_id)
        try:
            enrichment: EnrichmentRecord | None = await self._store.get_enrichment(ctx, indicator_id)
        except NotFoundError:
            enrichment = None
        edges = await self._store.edges_of(ctx, indicator_id)
        cluster = await self._correlation.cluster_of(ctx, indicator_id) if self._correlation else None
        return {
            "indicator": indicator.to_canonical(),
            "malware_families": sorted(indicator.malware_families),
            "threat_actors": sorted(indicator.threat_actors),
            "campaigns": sorted(indicator.campaigns),
            "enrichment": enrichment.to_dict() if enrichment is not None else None,
            "relationships": [
                {
                    "source_id": e.source_id,
                    "target_id": e.target_id,
                    "relationship_type": e.relationship_type,
                    "confidence": round(e.confidence, 6),
                    "rule_id": e.rule_id,
                }
                for e in edges
            ],
            "cluster": cluster.to_dict() if cluster is not None else None,
        }

    async def delete(self, ctx: TenantContext, indicator_id: str, *, timeout: float | None = None) -> Indicator:
        """Delete an indicator of the caller's tenant and record the deletion."""
        ctx.require(Permission.WRITE)
        return await self._bounded(self._delete(ctx, indicator_id), "delete", timeout)

    async def _delete(self, ctx: TenantContext, indicator_id: str) -> Indicator:
        indicator = await self._store.get(ctx, indicator_id)
        if self._resolver is not None:
            async with self._resolver.lock_for(indicator.fingerprint()):
                await self._store.delete(ctx, indicator_id)
        else:
            await self._store.delete(ctx, indicator_id)
        if self._audit is not None:
            await self._audit.log_deletion(ctx, indicator_id, kind=indicator.kind, value=indicator.value)
        logger.info(
            "Deleted indicator %s (%s:%s)",
            indicator_id,
            indicator.kind,
            indicator.value,
            extra={"tenant_id": ctx.tenant_id},
        )
        return indicator

    # ------------------------------------------------------------------
    # Change feed
    # ------------------------------------------------------------------

    def changes(
        self, ctx: TenantContext, *, since: int = 0, limit: int = 1000, tenant_id: str | None = None
    ) -> ChangePage:
        """Poll committed changes after watermark *since*.

        ``lagged`` is set when events after *since* are no longer retained;
        the caller should resynchronize from a search before continuing.
        """
        ctx.require(Permission.READ)
        ctx.check_tenant(tenant_id)
        if since < 0:
            raise ValidationError("since must not be negative")
        events, pruned = self._changes.events_since(ctx.tenant_id, since, self._limit(limit))
        watermark = events[-1].seq if events else max(since, 0)
        return ChangePage(events=events, watermark=watermark, lagged=pruned)

    def subscribe(self, ctx: TenantContext, *, since: int | None = None) -> Subscription:
        """Live subscription to the caller's tenant, optionally replaying from *since*."""
        ctx.require(Permission.READ)
        return self._changes.subscribe(ctx.tenant_id, since=since)

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    async def aggregates(
        self,
        ctx: TenantContext,
        *,
        top_n: int = TOP_N_DEFAULT,
        history_limit: int = 20,
        tenant_id: str | None = None,
        timeout: float | None = None,
    ) -> Aggregates:
        ctx.require(Permission.READ)
        ctx.check_tenant(tenant_id)
        return await self._bounded(self._aggregates(ctx, top_n, history_limit), "aggregates", timeout)

    async def _aggregates(self, ctx: TenantContext, top_n: int, history_limit: int) -> Aggregates:
        indicators = await self._store.search(ctx, SearchCriteria())
        by_kind: Counter[str] = Counter(i.kind for i in indicators)
        by_severity: Counter[str] = Counter({s.value: 0 for s in Severity})
        by_severity.update(i.severity.value for i in indicators)
        by_feed: Counter[str] = Counter(f for i in indicators for f in i.source_feeds)
        families: Counter[str] = Counter(f for i in indicators for f in _names(i.malware_families))
        actors: Counter[str] = Counter(a for i in indicators for a in _names(i.threat_actors))

        cluster_count = 0
        if self._correlation is not None:
            cluster_count = len(await self._correlation.snapshot(ctx))
        jobs = await self._store.list_sync_jobs(ctx, limit=history_limit)
        return Aggregates(
            total=len(indicators),
            by_kind=dict(sorted(by_kind.items())),
            by_severity=dict(by_severity),
            by_feed=dict(sorted(by_feed.items())),
            top_malware_families=_top(families, top_n),
            top_actors=_top(actors, top_n),
            cluster_count=cluster_count,
            sync_history=[job.summary() for job in jobs],
        )


def _names(values: Iterable[str]) -> set[str]:
    return {v.strip() for v in values if v and v.strip()}


def describe_change(event: ChangeEvent) -> str:
    return f"#{event.seq} {event.change_kind} {event.entity_type} {event.entity_id} at {format_timestamp(event.committed_at)}"
