# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Tests for the per-tenant change feed."""

from __future__ import annotations

import asyncio

from tiace.core.constants import ChangeKind, EntityType
from tiace.streaming.changefeed import ChangeEvent, ChangeFeed, Lagged


class TestPublish:
    def test_sequences_are_per_tenant(self) -> None:
        feed = ChangeFeed()
        a1 = feed.publish("a", "x", ChangeKind.CREATED)
        b1 = feed.publish("b", "y", ChangeKind.CREATED)
        a2 = feed.publish("a", "x", ChangeKind.UPDATED)
        assert (a1.seq, a2.seq, b1.seq) == (1, 2, 1)
        assert feed.head("a") == 2
        assert feed.tenants() == ["a", "b"]

    def test_entity_type_recorded(self) -> None:
        feed = ChangeFeed()
        event = feed.publish("a", "actor-1", ChangeKind.CREATED, EntityType.THREAT_ACTOR)
        assert event.to_dict()["entity_type"] == EntityType.THREAT_ACTOR.value


class TestPolling:
    def test_events_since_watermark(self) -> None:
        feed = ChangeFeed()
        for i in range(5):
            feed.publish("a", f"i{i}", ChangeKind.CREATED)
        events, pruned = feed.events_since("a", 2)
        assert [e.seq for e in events] == [3, 4, 5]
        assert not pruned

    def test_limit(self) -> None:
        feed = ChangeFeed()
        for i in range(5):
            feed.publish("a", f"i{i}", ChangeKind.CREATED)
        events, _ = feed.events_since("a", 0, limit=2)
        assert [e.seq for e in events] == [1, 2]

    def test_pruned_range_is_flagged(self) -> None:
        feed = ChangeFeed(retention=3)
        for i in range(6):
            feed.publish("a", f"i{i}", ChangeKind.CREATED)
        events, pruned = feed.events_since("a", 1)
        assert pruned
        assert [e.seq for e in events] == [4, 5, 6]

    def test_unknown_tenant_is_empty(self) -> None:
        assert ChangeFeed().events_since("nobody", 0) == ([], False)

    def test_tenants_are_isolated(self) -> None:
        feed = ChangeFeed()
        feed.publish("a", "x", ChangeKind.CREATED)
        feed.publish("b", "y", ChangeKind.CREATED)
        events, _ = feed.events_since("b", 0)
        assert [e.entity_id for e in events] == ["y"]


class TestSubscribe:
    async def test_live_delivery_in_commit_order(self) -> None:
        feed = ChangeFeed()
        sub = feed.subscribe("a")
        feed.publish("a", "x", ChangeKind.CREATED)
        feed.publish("b", "ignored", ChangeKind.CREATED)
        feed.publish("a", "x", ChangeKind.DELETED)

        first = await asyncio.wait_for(sub.__anext__(), timeout=1)
        second = await asyncio.wait_for(sub.__anext__(), timeout=1)
        assert isinstance(first, ChangeEvent) and first.change_kind is ChangeKind.CREATED
        assert isinstance(second, ChangeEvent) and second.change_kind is ChangeKind.DELETED
        assert sub.watermarks == {"a": 2}
        sub.close()

    def test_replay_from_watermark(self) -> None:
        feed = ChangeFeed()
        for i in range(4):
            feed.publish("a", f"i{i}", ChangeKind.CREATED)
        sub = feed.subscribe("a", since=2)
        items = sub.drain_nowait()
        assert [e.seq for e in items if isinstance(e, ChangeEvent)] == [3, 4]

    def test_global_subscriber_sees_every_tenant(self) -> None:
        feed = ChangeFeed()
        sub = feed.subscribe(None)
        feed.publish("a", "x", ChangeKind.CREATED)
        feed.publish("b", "y", ChangeKind.CREATED)
        assert [e.tenant_id for e in sub.drain_nowait()] == ["a", "b"]

    def test_full_buffer_reports_lag_once(self) -> None:
        feed = ChangeFeed(buffer_size=2)
        sub = feed.subscribe("a")
        for i in range(5):
            feed.publish("a", f"i{i}", ChangeKind.CREATED)

        items = sub.drain_nowait()
        assert [type(i) for i in items] == [ChangeEvent, ChangeEvent, Lagged]
        lag = items[-1]
        assert isinstance(lag, Lagged)
        assert lag.missed == 3
        assert lag.watermarks == {"a": 2}
        assert sub.drain_nowait() == []

    def test_lagged_subscriber_is_detached(self) -> None:
        feed = ChangeFeed(buffer_size=1)
        sub = feed.subscribe("a")
        feed.publish("a", "x", ChangeKind.CREATED)
        feed.publish("a", "y", ChangeKind.CREATED)
        feed.publish("a", "z", ChangeKind.CREATED)
        assert sub.lagged
        events = [i for i in sub.drain_nowait() if isinstance(i, ChangeEvent)]
        assert [e.entity_id for e in events] == ["x"]

    def test_resubscribe_past_retention_starts_lagged(self) -> None:
        feed = ChangeFeed(retention=2)
        for i in range(5):
            feed.publish("a", f"i{i}", ChangeKind.CREATED)
        sub = feed.subscribe("a", since=0)
        assert sub.lagged
        [lag] = sub.drain_nowait()
        assert isinstance(lag, Lagged)

    async def test_close_ends_iteration(self) -> None:
        feed = ChangeFeed()
        sub = feed.subscribe("a")
        feed.close()
        items = [item async for item in sub]
        assert items == []
