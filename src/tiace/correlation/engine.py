# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Correlation engine: consumes the change feed and maintains edges and clusters.

The engine is the single logical consumer of indicator commits.  Each
tenant has its own edge index, rule indexes and cluster index, guarded by a
per-tenant lock while events are applied.  Progress is tracked as a
per-tenant watermark over the change feed; when retained events have been
pruned past the watermark the tenant is rebuilt from the store.

Queries call :meth:`CorrelationEngine.snapshot`, which first applies any
outstanding events, so cluster state is recomputed lazily per query and a
returned snapshot is immutable.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Iterable

from tiace.core.config import Settings
from tiace.core.constants import SEVERITY_ORDER, ChangeKind, EntityType, IndicatorKind, RelationshipType
from tiace.core.exceptions import NotFoundError
from tiace.core.metrics import CLUSTER_COUNT, CORRELATION_EDGES
from tiace.correlation.clusters import ClusterIndex, ClusterSnapshot
from tiace.correlation.graph import EdgeIndex, hierarchy_link, mirror_of
from tiace.correlation.rules import (
    RULE_SHARED_HASH,
    RULE_SHARED_INFRASTRUCTURE,
    NodeFacts,
    pair_of,
    prefer,
    resolve_proposals,
    shared_actor,
    shared_hash,
    shared_infrastructure,
)
from tiace.identity.actors import ActorDirectory
from tiace.models.entities import Cluster, Relationship
from tiace.models.indicator import Attribution
from tiace.models.tenant import TenantContext, system_context
from tiace.storage.base import IndicatorStore
from tiace.streaming.changefeed import ChangeEvent, ChangeFeed, Lagged

logger = logging.getLogger(__name__)

_LOAD_CHUNK = 500


def _same_edge(current: Relationship, proposal: Relationship) -> bool:
    """Whether *current* already stores *proposal*, in either direction for ``same-as``."""
    if current.key == proposal.key:
        return True
    mirror = mirror_of(proposal)
    return mirror is not None and current.key == mirror.key


class _TenantState:
    def __init__(self, tenant_id: str, threshold: float) -> None:
        self.tenant_id = tenant_id
        self.edges = EdgeIndex()
        self.clusters = ClusterIndex(tenant_id, threshold=threshold)
        self.facts: dict[str, NodeFacts] = {}
        self.hash_refs: dict[str, set[str]] = {}
        self.hash_indicators: dict[str, str] = {}
        self.asn_members: dict[str, set[str]] = {}
        self.watermark = 0
        self.loaded = False
        self.lock = asyncio.Lock()

    def reset(self) -> None:
        self.edges.clear()
        self.clusters.clear()
        self.facts.clear()
        self.hash_refs.clear()
        self.hash_indicators.clear()
        self.asn_members.clear()

    def index(self, facts: NodeFacts) -> None:
        self.unindex(facts.indicator_id)
        self.facts[facts.indicator_id] = facts
        for digest in facts.hashes:
            self.hash_refs.setdefault(digest, set()).add(facts.indicator_id)
        if facts.kind == IndicatorKind.HASH:
            self.hash_indicators[facts.value] = facts.indicator_id
        if facts.asn and facts.malicious:
            self.asn_members.setdefault(facts.asn, set()).add(facts.indicator_id)

    def unindex(self, indicator_id: str) -> None:
        old = self.facts.pop(indicator_id, None)
        if old is None:
            return
        for digest in old.hashes:
            refs = self.hash_refs.get(digest)
            if refs is not None:
                refs.discard(indicator_id)
                if not refs:
                    del self.hash_refs[digest]
        if self.hash_indicators.get(old.value) == indicator_id:
            del self.hash_indicators[old.value]
        if old.asn and old.asn in self.asn_members:
            self.asn_members[old.asn].discard(indicator_id)
            if not self.asn_members[old.asn]:
                del self.asn_members[old.asn]

    def infrastructure_holds(self, edge: Relationship) -> bool:
        a, b = self.facts.get(edge.source_id), self.facts.get(edge.target_id)
        if a is None or b is None:
            return False
        return a.malicious and b.malicious and bool(a.asn) and a.asn == b.asn and a.overlaps(b)


class CorrelationEngine:
    def __init__(
        self,
        store: IndicatorStore,
        changes: ChangeFeed,
        directory: ActorDirectory,
        *,
        threshold: float = 0.75,
        decay: float = 0.9,
        fanout: int = 50,
    ) -> None:
        self._store = store
        self._changes = changes
        self._directory = directory
        self._threshold = threshold
        self._decay = decay
        self._fanout = fanout
        self._tenants: dict[str, _TenantState] = {}
        self._task: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(
        cls, store: IndicatorStore, changes: ChangeFeed, directory: ActorDirectory, settings: Settings
    ) -> CorrelationEngine:
        return cls(
            store,
            changes,
            directory,
            threshold=settings.cluster_threshold,
            decay=settings.infrastructure_decay,
            fanout=settings.infrastructure_fanout,
        )

    def _state(self, tenant_id: str) -> _TenantState:
        state = self._tenants.get(tenant_id)
        if state is None:
            state = _TenantState(tenant_id, self._threshold)
            self._tenants[tenant_id] = state
        return state

    # ------------------------------------------------------------------
    # Background consumer
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="tiace-correlation")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _run(self) -> None:
        while True:
            subscription = self._changes.subscribe(None)
            try:
                async for item in subscription:
                    if isinstance(item, Lagged):
                        logger.warning("Correlation consumer lagged by %d events; catching up", item.missed)
                        for tenant_id in self._changes.tenants():
                            await self.flush(system_context(tenant_id))
                        break
                    if item.change_kind is ChangeKind.CLUSTERED:
                        continue
                    await self.flush(system_context(item.tenant_id))
                else:
                    return
            finally:
                subscription.close()

    # ------------------------------------------------------------------
    # Event application
    # ------------------------------------------------------------------

    async def flush(self, ctx: TenantContext) -> int:
        """Apply every outstanding change event for the tenant.  Returns how many were applied."""
        state = self._state(ctx.tenant_id)
        async with state.lock:
            before = state.clusters.snapshot()
            if not state.loaded:
                await self._load(ctx, state)
            applied = 0
            while True:
                events, pruned = self._changes.events_since(ctx.tenant_id, state.watermark)
                if pruned:
                    logger.warning(
                        "Change feed pruned past watermark %d; rebuilding correlation state",
                        state.watermark,
                        extra={"tenant_id": ctx.tenant_id},
                    )
                    await self._load(ctx, state)
                    continue
                if not events:
                    break
                for event in events:
                    state.watermark = event.seq
                    if await self._apply(ctx, state, event):
                        applied += 1
            self._publish_cluster_changes(state, before)
        return applied

    async def _load(self, ctx: TenantContext, state: _TenantState) -> None:
        state.reset()
        state.watermark = self._changes.head(ctx.tenant_id)
        ids = await self._store.list_ids(ctx)
        indicators = []
        for start in range(0, len(ids), _LOAD_CHUNK):
            indicators.extend(await self._store.get_many(ctx, ids[start : start + _LOAD_CHUNK]))
        for indicator in indicators:
            state.index(NodeFacts.of(indicator))
        for edge in await self._store.all_edges(ctx):
            state.edges.add(edge)
            state.clusters.add_edge(edge)
        for indicator in indicators:
            await self._correlate(ctx, state, indicator.indicator_id, indicator.attributions)
        state.loaded = True
        logger.info(
            "Correlation state loaded: %d indicators, %d edges",
            len(state.facts),
            len(state.edges),
            extra={"tenant_id": ctx.tenant_id},
        )

    async def _apply(self, ctx: TenantContext, state: _TenantState, event: ChangeEvent) -> bool:
        if event.entity_type is not EntityType.INDICATOR or event.change_kind is ChangeKind.CLUSTERED:
            return False
        if event.change_kind is ChangeKind.DELETED:
            self._drop(state, event.entity_id)
            return True
        try:
            indicator = await self._store.get(ctx, event.entity_id)
        except NotFoundError:
            self._drop(state, event.entity_id)
            return True
        state.index(NodeFacts.of(indicator))
        await self._correlate(ctx, state, indicator.indicator_id, indicator.attributions)
        return True

    def _drop(self, state: _TenantState, indicator_id: str) -> None:
        """Forget a deleted indicator; the store already cascaded its edges."""
        state.unindex(indicator_id)
        removed = state.edges.remove_node(indicator_id)
        state.clusters.remove_node(indicator_id)
        retracted = sum(1 for e in removed if e.rule_id > 0)
        if retracted:
            CORRELATION_EDGES.labels(action="retracted").inc(retracted)

    async def _correlate(
        self, ctx: TenantContext, state: _TenantState, indicator_id: str, attributions: Iterable[Attribution]
    ) -> None:
        node = state.facts[indicator_id]
        proposals = [
            *shared_hash(ctx.tenant_id, node, state.facts, state.hash_refs, state.hash_indicators),
            *shared_infrastructure(
                ctx.tenant_id,
                node,
                state.facts,
                state.asn_members,
                decay=self._decay,
                fanout=self._fanout,
            ),
        ]
        by_actor: dict[str, list[tuple[str, float]]] = {}
        for attribution in attributions:
            actor_id = attribution.actor_id or await self._directory.resolve(ctx, "actor", attribution.actor)
            by_actor.setdefault(actor_id, []).append((attribution.feed_id, attribution.confidence))
        proposals.extend(shared_actor(ctx.tenant_id, by_actor))
        winners = resolve_proposals(proposals)

        for edge in state.edges.incident(indicator_id):
            stale = (edge.rule_id == RULE_SHARED_HASH and pair_of(edge) not in winners) or (
                edge.rule_id == RULE_SHARED_INFRASTRUCTURE and not state.infrastructure_holds(edge)
            )
            if stale:
                await self._retract(ctx, state, edge)

        for pair, proposal in sorted(winners.items()):
            current = next((e for e in state.edges.between(*pair) if e.rule_id > 0), None)
            if current is None:
                await self._insert(ctx, state, proposal)
                continue
            if current.rule_id == proposal.rule_id and _same_edge(current, proposal):
                if current.confidence != proposal.confidence:
                    await self._insert(ctx, state, proposal)
                continue
            if prefer(current, proposal) is proposal:
                await self._retract(ctx, state, current)
                await self._insert(ctx, state, proposal)

    async def _insert(self, ctx: TenantContext, state: _TenantState, edge: Relationship) -> None:
        batch = [edge] if (mirror := mirror_of(edge)) is None else [edge, mirror]
        try:
            await self._store.store_edges(ctx, batch)
        except NotFoundError:
            logger.debug("Skipping edge %s: endpoint vanished", edge.key)
            return
        for stored in batch:
            self._index_edge(state, stored)
        CORRELATION_EDGES.labels(action="inserted").inc()

    async def _retract(self, ctx: TenantContext, state: _TenantState, edge: Relationship) -> None:
        keys = [edge.key] if (mirror := mirror_of(edge)) is None else [edge.key, mirror.key]
        await self._store.delete_edges(ctx, keys)
        for key in keys:
            state.edges.remove(key)
            state.clusters.remove_edge(key)
        CORRELATION_EDGES.labels(action="retracted").inc()

    @staticmethod
    def _index_edge(state: _TenantState, edge: Relationship) -> None:
        previous = state.edges.add(edge)
        if previous is not None:
            state.clusters.remove_edge(previous.key)
        state.clusters.add_edge(edge)

    def _publish_cluster_changes(self, state: _TenantState, before: ClusterSnapshot) -> None:
        after = state.clusters.snapshot()
        if after.version == before.version:
            return
        changed = sorted(
            node
            for node in set(before.assignment) | set(after.assignment)
            if before.cluster_of(node) != after.cluster_of(node)
        )
        for node in changed:
            entity_type = EntityType.INDICATOR if node in state.facts else EntityType.THREAT_ACTOR
            self._changes.publish(state.tenant_id, node, ChangeKind.CLUSTERED, entity_type)
        CLUSTER_COUNT.set(sum(len(s.clusters.snapshot()) for s in self._tenants.values()))

    # ------------------------------------------------------------------
    # Edge writes from ingestion
    # ------------------------------------------------------------------

    async def add_edges(self, ctx: TenantContext, edges: Iterable[Relationship]) -> int:
        """Persist feed-asserted or synthesized edges and index them.

        Self-referencing ``same-as`` and hierarchy edges are rejected, as are
        ``parent-of``/``child-of`` edges that would close a cycle.  ``same-as``
        is stored in both directions.  Returns how many of *edges* were accepted.
        """
        state = self._state(ctx.tenant_id)
        async with state.lock:
            before = state.clusters.snapshot()
            try:
                if not state.loaded:
                    await self._load(ctx, state)
                accepted: list[Relationship] = []
                pending: dict[str, list[str]] = {}
                for edge in edges:
                    edge = edge.model_copy(update={"tenant_id": ctx.tenant_id})
                    if (reason := self._violation(state, edge, pending)) is not None:
                        logger.warning("Rejecting edge %s: %s", edge.key, reason, extra={"tenant_id": ctx.tenant_id})
                        continue
                    accepted.append(edge)
                    if (link := hierarchy_link(edge)) is not None:
                        pending.setdefault(link[0], []).append(link[1])
                if not accepted:
                    return 0
                batch = {e.key: e for e in accepted}
                for edge in accepted:
                    if (mirror := mirror_of(edge)) is not None:
                        batch.setdefault(mirror.key, mirror)
                await self._store.store_edges(ctx, list(batch.values()))
                for edge in batch.values():
                    self._index_edge(state, edge)
            finally:
                self._publish_cluster_changes(state, before)
        return len(accepted)

    @staticmethod
    def _violation(state: _TenantState, edge: Relationship, pending: dict[str, list[str]]) -> str | None:
        link = hierarchy_link(edge)
        symmetric = edge.relationship_type == RelationshipType.SAME_AS
        if edge.source_id == edge.target_id and (link is not None or symmetric):
            return "self-referencing"
        if link is not None and state.edges.reaches(link[1], link[0], pending):
            return "closes a parent/child cycle"
        return None

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def snapshot(self, ctx: TenantContext) -> ClusterSnapshot:
        await self.flush(ctx)
        return self._state(ctx.tenant_id).clusters.snapshot()

    async def clusters(self, ctx: TenantContext) -> list[Cluster]:
        return await self.describe(ctx, await self.snapshot(ctx))

    async def describe(self, ctx: TenantContext, snapshot: ClusterSnapshot) -> list[Cluster]:
        """Clusters with severity (max) and confidence (mean) over indicator members."""
        clusters = snapshot.clusters()
        for cluster in clusters:
            members = await self._store.get_many(ctx, cluster.members)
            if not members:
                continue
            cluster.severity = max((m.severity for m in members), key=lambda s: SEVERITY_ORDER[s])
            cluster.confidence = round(sum(m.confidence for m in members) / len(members), 6)
        return clusters

    async def cluster_of(self, ctx: TenantContext, entity_id: str) -> Cluster | None:
        snapshot = await self.snapshot(ctx)
        cluster_id = snapshot.cluster_of(entity_id)
        if cluster_id is None:
            return None
        described = await self.describe(ctx, snapshot)
        return next(c for c in described if c.cluster_id == cluster_id)
