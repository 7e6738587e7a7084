# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Tests for correlation rules, cluster maintenance and the correlation engine."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from tiace.core.constants import ChangeKind, RelationshipType
from tiace.correlation.clusters import ClusterIndex
from tiace.correlation.engine import CorrelationEngine
from tiace.correlation.graph import EdgeIndex, mirror_of
from tiace.correlation.rules import (
    RULE_SHARED_ACTOR,
    RULE_SHARED_HASH,
    RULE_SHARED_INFRASTRUCTURE,
    NodeFacts,
    prefer,
    resolve_proposals,
    shared_actor,
    shared_hash,
    shared_infrastructure,
)
from tiace.identity.actors import ActorDirectory
from tiace.models.entities import Relationship
from tiace.models.indicator import Attribution, IndicatorContext
from tiace.models.tenant import TenantContext
from tiace.storage.memory import MemoryStore
from tiace.streaming.changefeed import ChangeFeed

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _facts(
    indicator_id: str,
    *,
    kind: str = "ip",
    value: str | None = None,
    confidence: float = 0.8,
    asn: str | None = "AS64500",
    hashes: frozenset[str] = frozenset(),
    malicious: bool = True,
    first_seen: datetime = NOW,
    last_seen: datetime = NOW,
) -> NodeFacts:
    return NodeFacts(
        indicator_id=indicator_id,
        kind=kind,
        value=value or indicator_id,
        confidence=confidence,
        first_seen=first_seen,
        last_seen=last_seen,
        asn=asn,
        hashes=hashes,
        malicious=malicious,
    )


def _edge(a: str, b: str, rel: str = "related-to", confidence: float = 0.9, rule_id: int = 3) -> Relationship:
    return Relationship(source_id=a, target_id=b, relationship_type=rel, confidence=confidence, rule_id=rule_id)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


class TestSharedHash:
    def test_observer_points_at_hash_indicator(self) -> None:
        digest = "d41d8cd98f00b204e9800998ecf8427e"
        domain = _facts("d", kind="domain", confidence=0.9, hashes=frozenset({digest}))
        hashed = _facts("h", kind="hash", value=digest, confidence=0.4)
        facts = {"d": domain, "h": hashed}
        [edge] = shared_hash("t", domain, facts, {digest: {"d"}}, {digest: "h"})
        assert (edge.source_id, edge.target_id) == ("d", "h")
        assert edge.relationship_type == RelationshipType.INDICATES_PRESENCE_OF
        assert edge.confidence == pytest.approx(0.4)
        assert edge.rule_id == RULE_SHARED_HASH

    def test_hash_indicator_links_observers(self) -> None:
        digest = "a" * 64
        hashed = _facts("h", kind="hash", value=digest)
        url = _facts("u", kind="url", hashes=frozenset({digest}), confidence=0.5)
        [edge] = shared_hash("t", hashed, {"h": hashed, "u": url}, {digest: {"u"}}, {digest: "h"})
        assert (edge.source_id, edge.target_id) == ("u", "h")

    def test_same_kind_observers_not_linked(self) -> None:
        digest = "b" * 40
        a = _facts("a", kind="domain", hashes=frozenset({digest}))
        b = _facts("b", kind="domain", hashes=frozenset({digest}))
        assert shared_hash("t", a, {"a": a, "b": b}, {digest: {"a", "b"}}, {}) == []

    def test_different_kind_observers_linked(self) -> None:
        digest = "b" * 40
        a = _facts("a", kind="domain", hashes=frozenset({digest}))
        b = _facts("b", kind="url", hashes=frozenset({digest}))
        [edge] = shared_hash("t", b, {"a": a, "b": b}, {digest: {"a", "b"}}, {})
        assert (edge.source_id, edge.target_id) == ("a", "b")


class TestSharedInfrastructure:
    def test_pair_on_same_asn(self) -> None:
        a, b = _facts("a", confidence=0.8), _facts("b", confidence=0.9)
        [edge] = shared_infrastructure("t", a, {"a": a, "b": b}, {"AS64500": {"a", "b"}})
        assert edge.relationship_type == RelationshipType.RELATED_TO
        assert edge.confidence == pytest.approx(0.8)
        assert edge.rule_id == RULE_SHARED_INFRASTRUCTURE

    def test_breadth_decays_confidence(self) -> None:
        nodes = {n: _facts(n, confidence=0.8) for n in "abcd"}
        edges = shared_infrastructure("t", nodes["a"], nodes, {"AS64500": set(nodes)}, decay=0.9)
        assert len(edges) == 3
        assert all(e.confidence == pytest.approx(0.8 * 0.9**2) for e in edges)

    def test_fanout_caps_edges(self) -> None:
        nodes = {f"n{i}": _facts(f"n{i}") for i in range(6)}
        edges = shared_infrastructure("t", nodes["n0"], nodes, {"AS64500": set(nodes)}, fanout=2)
        assert len(edges) == 2

    def test_requires_malicious_overlap_and_asn(self) -> None:
        a = _facts("a")
        benign = _facts("b", malicious=False)
        stale = _facts("c", first_seen=NOW - timedelta(days=30), last_seen=NOW - timedelta(days=20))
        facts = {"a": a, "b": benign, "c": stale}
        assert shared_infrastructure("t", a, facts, {"AS64500": {"a", "b", "c"}}) == []
        assert shared_infrastructure("t", _facts("x", asn=None), facts, {}) == []


class TestSharedActor:
    def test_independent_feeds_link_actors(self) -> None:
        [edge] = shared_actor("t", {"actor-a": [("feed-1", 0.6)], "actor-b": [("feed-2", 0.5)]})
        assert edge.relationship_type == RelationshipType.SAME_AS
        assert edge.confidence == pytest.approx(0.8)
        assert edge.rule_id == RULE_SHARED_ACTOR

    def test_single_feed_is_not_enough(self) -> None:
        assert shared_actor("t", {"actor-a": [("feed-1", 0.9)], "actor-b": [("feed-1", 0.9)]}) == []

    def test_feed_counted_once_at_highest(self) -> None:
        [edge] = shared_actor(
            "t", {"a": [("f1", 0.2), ("f1", 0.5)], "b": [("f2", 0.5)]}
        )
        assert edge.confidence == pytest.approx(0.75)


class TestPrefer:
    def test_same_as_never_replaced(self) -> None:
        same = _edge("a", "b", RelationshipType.SAME_AS, 0.3, RULE_SHARED_ACTOR)
        related = _edge("a", "b", confidence=0.99)
        assert prefer(same, related) is same
        assert prefer(related, same) is same

    def test_higher_confidence_then_lower_rule(self) -> None:
        low = _edge("a", "b", confidence=0.4, rule_id=2)
        high = _edge("a", "b", confidence=0.6, rule_id=3)
        assert prefer(low, high) is high
        tie_a = _edge("a", "b", confidence=0.5, rule_id=2)
        tie_b = _edge("a", "b", confidence=0.5, rule_id=3)
        assert prefer(tie_b, tie_a) is tie_a

    def test_resolve_by_unordered_pair(self) -> None:
        winners = resolve_proposals([_edge("b", "a", confidence=0.2), _edge("a", "b", confidence=0.7)])
        assert list(winners) == [("a", "b")]
        assert winners[("a", "b")].confidence == pytest.approx(0.7)


# ---------------------------------------------------------------------------
# Edge index and clusters
# ---------------------------------------------------------------------------


class TestEdgeIndex:
    def test_add_remove_and_lookup(self) -> None:
        index = EdgeIndex()
        edge = _edge("a", "b")
        assert index.add(edge) is None
        assert index.add(edge) is edge
        assert index.between("b", "a") == [edge]
        assert index.outgoing("a", "related-to") == [edge]
        assert index.remove_node("a") == [edge]
        assert len(index) == 0
        assert index.incident("b") == []

    def test_hierarchy_reachability(self) -> None:
        index = EdgeIndex()
        index.add(_edge("a", "b", RelationshipType.PARENT_OF, 1.0, 0))
        index.add(_edge("c", "b", RelationshipType.CHILD_OF, 1.0, 0))
        assert index.children("b") == ["c"]
        assert index.reaches("a", "c")
        assert not index.reaches("c", "a")
        assert index.reaches("c", "a", {"c": ["a"]})

    def test_mirror_only_for_same_as(self) -> None:
        mirror = mirror_of(_edge("a", "b", RelationshipType.SAME_AS, 1.0, 0))
        assert mirror is not None and mirror.key == ("b", "a", "same-as")
        assert mirror_of(_edge("a", "a", RelationshipType.SAME_AS, 1.0, 0)) is None
        assert mirror_of(_edge("a", "b")) is None


class TestClusterIndex:
    def test_strong_edges_merge(self) -> None:
        clusters = ClusterIndex("t", threshold=0.75)
        assert clusters.add_edge(_edge("a", "b", confidence=0.8))
        assert clusters.add_edge(_edge("b", "c", RelationshipType.SAME_AS, 0.1))
        snapshot = clusters.snapshot()
        assert len(snapshot) == 1
        cluster_id = snapshot.cluster_of("a")
        assert snapshot.members_of(cluster_id) == ("a", "b", "c")
        assert snapshot.clusters()[0].representative == "a"

    def test_weak_edges_ignored(self) -> None:
        clusters = ClusterIndex("t", threshold=0.75)
        assert not clusters.add_edge(_edge("a", "b", confidence=0.5))
        assert not clusters.add_edge(_edge("a", "b", RelationshipType.INDICATES_PRESENCE_OF, 1.0, 2))
        assert len(clusters.snapshot()) == 0

    def test_retraction_splits_component(self) -> None:
        clusters = ClusterIndex("t")
        ab, bc = _edge("a", "b"), _edge("b", "c")
        clusters.add_edge(ab)
        clusters.add_edge(bc)
        assert clusters.remove_edge(bc.key)
        snapshot = clusters.snapshot()
        assert snapshot.cluster_of("c") is None
        assert snapshot.members_of(snapshot.cluster_of("a")) == ("a", "b")

    def test_remove_node(self) -> None:
        clusters = ClusterIndex("t")
        clusters.add_edge(_edge("a", "b"))
        assert clusters.remove_node("b")
        assert len(clusters.snapshot()) == 0

    def test_snapshot_is_reused_until_change(self) -> None:
        clusters = ClusterIndex("t")
        clusters.add_edge(_edge("a", "b"))
        first = clusters.snapshot()
        assert clusters.snapshot() is first
        clusters.add_edge(_edge("c", "d"))
        second = clusters.snapshot()
        assert second is not first
        assert second.version > first.version
        assert len(first) == 1

    def test_cluster_id_is_stable(self) -> None:
        one, two = ClusterIndex("t"), ClusterIndex("t")
        one.add_edge(_edge("a", "b"))
        one.add_edge(_edge("b", "c"))
        two.add_edge(_edge("c", "b"))
        two.add_edge(_edge("a", "c"))
        assert one.snapshot().cluster_of("a") == two.snapshot().cluster_of("b")


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


@pytest.fixture
def directory(store: MemoryStore) -> ActorDirectory:
    return ActorDirectory(store)


@pytest.fixture
def correlation(store: MemoryStore, changes: ChangeFeed, directory: ActorDirectory) -> CorrelationEngine:
    return CorrelationEngine(store, changes, directory, threshold=0.75)


def _infra(make_indicator, value: str, **overrides):
    values = {"tags": {"c2"}, "confidence": 0.8, "context": IndicatorContext(asn="AS64500")}
    values.update(overrides)
    return make_indicator("ip", value, **values)


class TestCorrelationEngine:
    async def test_shared_infrastructure_forms_cluster(
        self, correlation: CorrelationEngine, store: MemoryStore, tenant: TenantContext, make_indicator
    ) -> None:
        a = await store.store(tenant, _infra(make_indicator, "203.0.113.1"))
        b = await store.store(tenant, _infra(make_indicator, "203.0.113.2"))

        snapshot = await correlation.snapshot(tenant)
        cluster_id = snapshot.cluster_of(a.indicator_id)
        assert cluster_id is not None
        assert snapshot.cluster_of(b.indicator_id) == cluster_id

        [edge] = await store.all_edges(tenant)
        assert edge.rule_id == RULE_SHARED_INFRASTRUCTURE

        [cluster] = await correlation.clusters(tenant)
        assert cluster.confidence == pytest.approx(0.8)

    async def test_incremental_updates(
        self, correlation: CorrelationEngine, store: MemoryStore, tenant: TenantContext, make_indicator
    ) -> None:
        await correlation.flush(tenant)
        a = await store.store(tenant, _infra(make_indicator, "203.0.113.1"))
        await store.store(tenant, _infra(make_indicator, "203.0.113.2"))
        assert await correlation.flush(tenant) == 2
        assert len(await correlation.snapshot(tenant)) == 1

        current = await store.get(tenant, a.indicator_id)
        current.tags = set()
        await store.update(tenant, current)
        snapshot = await correlation.snapshot(tenant)
        assert len(snapshot) == 0
        assert await store.all_edges(tenant) == []

    async def test_delete_retracts_and_publishes(
        self,
        correlation: CorrelationEngine,
        store: MemoryStore,
        changes: ChangeFeed,
        tenant: TenantContext,
        make_indicator,
    ) -> None:
        a = await store.store(tenant, _infra(make_indicator, "203.0.113.1"))
        await store.store(tenant, _infra(make_indicator, "203.0.113.2"))
        await correlation.flush(tenant)
        await store.delete(tenant, a.indicator_id)
        assert len(await correlation.snapshot(tenant)) == 0

        events, _ = changes.events_since(tenant.tenant_id, 0)
        clustered = [e for e in events if e.change_kind is ChangeKind.CLUSTERED]
        assert len(clustered) == 4

    async def test_low_confidence_edge_does_not_cluster(
        self, correlation: CorrelationEngine, store: MemoryStore, tenant: TenantContext, make_indicator
    ) -> None:
        await store.store(tenant, _infra(make_indicator, "203.0.113.1", confidence=0.5))
        await store.store(tenant, _infra(make_indicator, "203.0.113.2"))
        snapshot = await correlation.snapshot(tenant)
        assert len(snapshot) == 0
        assert len(await store.all_edges(tenant)) == 1

    async def test_shared_hash_edge(
        self, correlation: CorrelationEngine, store: MemoryStore, tenant: TenantContext, make_indicator
    ) -> None:
        digest = "d41d8cd98f00b204e9800998ecf8427e"
        domain = await store.store(
            tenant, make_indicator(confidence=0.9, context=IndicatorContext(hashes=[digest]))
        )
        hashed = await store.store(tenant, make_indicator("hash", digest, confidence=0.7))
        await correlation.flush(tenant)
        [edge] = await store.edges_of(tenant, hashed.indicator_id)
        assert (edge.source_id, edge.target_id) == (domain.indicator_id, hashed.indicator_id)
        assert edge.confidence == pytest.approx(0.7)

    async def test_shared_actor_clusters_actors(
        self,
        correlation: CorrelationEngine,
        directory: ActorDirectory,
        store: MemoryStore,
        tenant: TenantContext,
        make_indicator,
    ) -> None:
        await store.store(
            tenant,
            make_indicator(
                attributions=[
                    Attribution(actor="Example Panda", feed_id="feed-a", confidence=0.6),
                    Attribution(actor="Sample Kitten", feed_id="feed-b", confidence=0.5),
                ]
            ),
        )
        snapshot = await correlation.snapshot(tenant)
        panda = await directory.lookup_actor(tenant, "example panda")
        kitten = await directory.lookup_actor(tenant, "sample kitten")
        assert panda and kitten
        assert snapshot.cluster_of(panda) == snapshot.cluster_of(kitten) is not None

    async def test_add_edges_updates_loaded_state(
        self, correlation: CorrelationEngine, store: MemoryStore, tenant: TenantContext, make_indicator
    ) -> None:
        a = await store.store(tenant, make_indicator("domain", "a.example.com"))
        b = await store.store(tenant, make_indicator("domain", "b.example.com"))
        await correlation.flush(tenant)
        stored = await correlation.add_edges(
            tenant, [_edge(a.indicator_id, b.indicator_id, RelationshipType.SAME_AS, 1.0, 0)]
        )
        assert stored == 1
        snapshot = await correlation.snapshot(tenant)
        assert snapshot.cluster_of(a.indicator_id) == snapshot.cluster_of(b.indicator_id) is not None

    async def test_same_as_stored_in_both_directions(
        self, correlation: CorrelationEngine, store: MemoryStore, tenant: TenantContext, make_indicator
    ) -> None:
        a = await store.store(tenant, make_indicator("domain", "a.example.com"))
        b = await store.store(tenant, make_indicator("domain", "b.example.com"))
        await correlation.add_edges(tenant, [_edge(a.indicator_id, b.indicator_id, RelationshipType.SAME_AS, 1.0, 0)])
        keys = {e.key for e in await store.all_edges(tenant)}
        assert (a.indicator_id, b.indicator_id, "same-as") in keys
        assert (b.indicator_id, a.indicator_id, "same-as") in keys

    async def test_retracting_same_as_removes_both_directions(
        self, correlation: CorrelationEngine, store: MemoryStore, tenant: TenantContext, make_indicator
    ) -> None:
        a = await store.store(tenant, make_indicator("domain", "a.example.com"))
        b = await store.store(tenant, make_indicator("domain", "b.example.com"))
        edge = _edge(a.indicator_id, b.indicator_id, RelationshipType.SAME_AS, 1.0, 0)
        await correlation.add_edges(tenant, [edge])
        await correlation._retract(tenant, correlation._state(tenant.tenant_id), edge)
        assert await store.all_edges(tenant) == []
        assert (await correlation.snapshot(tenant)).cluster_of(a.indicator_id) is None

    async def test_self_and_cyclic_edges_rejected(
        self, correlation: CorrelationEngine, store: MemoryStore, tenant: TenantContext, make_indicator
    ) -> None:
        a = await store.store(tenant, make_indicator("domain", "a.example.com"))
        b = await store.store(tenant, make_indicator("domain", "b.example.com"))
        a_id, b_id = a.indicator_id, b.indicator_id
        stored = await correlation.add_edges(
            tenant,
            [
                _edge(a_id, a_id, RelationshipType.SAME_AS, 1.0, 0),
                _edge(a_id, b_id, RelationshipType.PARENT_OF, 1.0, 0),
                _edge(b_id, a_id, RelationshipType.PARENT_OF, 1.0, 0),
            ],
        )
        assert stored == 1
        assert [e.key for e in await store.all_edges(tenant)] == [(a_id, b_id, "parent-of")]

    async def test_child_of_closing_cycle_rejected_across_calls(
        self, correlation: CorrelationEngine, store: MemoryStore, tenant: TenantContext, make_indicator
    ) -> None:
        a = await store.store(tenant, make_indicator("domain", "a.example.com"))
        b = await store.store(tenant, make_indicator("domain", "b.example.com"))
        c = await store.store(tenant, make_indicator("domain", "c.example.com"))
        a_id, b_id, c_id = a.indicator_id, b.indicator_id, c.indicator_id
        await correlation.add_edges(
            tenant,
            [
                _edge(a_id, b_id, RelationshipType.PARENT_OF, 1.0, 0),
                _edge(c_id, b_id, RelationshipType.CHILD_OF, 1.0, 0),
            ],
        )
        assert await correlation.add_edges(tenant, [_edge(a_id, c_id, RelationshipType.CHILD_OF, 1.0, 0)]) == 0
        assert await correlation.add_edges(tenant, [_edge(a_id, c_id, RelationshipType.PARENT_OF, 1.0, 0)]) == 1

    async def test_tenants_are_separate(
        self,
        correlation: CorrelationEngine,
        store: MemoryStore,
        tenant: TenantContext,
        other_tenant: TenantContext,
        make_indicator,
    ) -> None:
        await store.store(tenant, _infra(make_indicator, "203.0.113.1"))
        await store.store(other_tenant, _infra(make_indicator, "203.0.113.2"))
        assert len(await correlation.snapshot(tenant)) == 0
        assert len(await correlation.snapshot(other_tenant)) == 0

    async def test_cluster_of(
        self, correlation: CorrelationEngine, store: MemoryStore, tenant: TenantContext, make_indicator
    ) -> None:
        a = await store.store(tenant, _infra(make_indicator, "203.0.113.1"))
        await store.store(tenant, _infra(make_indicator, "203.0.113.2"))
        cluster = await correlation.cluster_of(tenant, a.indicator_id)
        assert cluster is not None and a.indicator_id in cluster.members
        assert await correlation.cluster_of(tenant, "unknown") is None
