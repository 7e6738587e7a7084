# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Bounded, per-tenant change feed with lag detection.

Each tenant has a monotonically increasing sequence number; events are
published synchronously right after the backend commit that produced them,
so the sequence order is the commit order.  Subscribers read from a bounded
buffer.  A subscriber whose buffer is full is dropped instead of blocking the
producer; after draining what it already holds it receives one
:class:`Lagged` signal and its iteration ends.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime

from tiace.core.constants import ChangeKind, EntityType
from tiace.core.metrics import CHANGEFEED_LAG
from tiace.models.indicator import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    seq: int
    tenant_id: str
    entity_id: str
    change_kind: ChangeKind
    entity_type: EntityType = EntityType.INDICATOR
    committed_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, object]:
        return {
            "seq": self.seq,
            "entity_id": self.entity_id,
            "change_kind": self.change_kind.value,
            "entity_type": self.entity_type.value,
            "committed_at": self.committed_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class Lagged:
    """Terminal signal for a dropped subscriber.

    ``watermarks`` holds the last delivered sequence per tenant, suitable
    for resubscribing.
    """

    missed: int
    watermarks: dict[str, int]


class Subscription:
    """Async iterator over change events for one tenant (or all tenants)."""

    def __init__(self, feed: ChangeFeed, tenant_id: str | None, capacity: int) -> None:
        self._feed = feed
        self.tenant_id = tenant_id
        self._capacity = capacity
        self._buffer: deque[ChangeEvent] = deque()
        self._ready = asyncio.Event()
        self._lagged = False
        self._lag_reported = False
        self._closed = False
        self.watermarks: dict[str, int] = {}

    @property
    def lagged(self) -> bool:
        return self._lagged

    def _offer(self, event: ChangeEvent) -> bool:
        if self._closed or self._lagged:
            return False
        if len(self._buffer) >= self._capacity:
            self._lagged = True
            self._ready.set()
            return False
        self._buffer.append(event)
        self._ready.set()
        return True

    def _mark_lagged(self) -> None:
        self._lagged = True
        self._ready.set()

    def close(self) -> None:
        self._closed = True
        self._ready.set()
        self._feed._detach(self)

    def __aiter__(self) -> AsyncIterator[ChangeEvent | Lagged]:
        return self

    async def __anext__(self) -> ChangeEvent | Lagged:
        while True:
            if self._buffer:
                event = self._buffer.popleft()
                self.watermarks[event.tenant_id] = event.seq
                return event
            if self._lagged:
                if self._lag_reported:
                    raise StopAsyncIteration
                self._lag_reported = True
                return Lagged(missed=self._feed.missed_since(self.watermarks, self.tenant_id), watermarks=dict(self.watermarks))
            if self._closed:
                raise StopAsyncIteration
            self._ready.clear()
            await self._ready.wait()

    def drain_nowait(self) -> list[ChangeEvent | Lagged]:
        """Return everything currently deliverable without waiting."""
        items: list[ChangeEvent | Lagged] = []
        while self._buffer:
            event = self._buffer.popleft()
            self.watermarks[event.tenant_id] = event.seq
            items.append(event)
        if self._lagged and not self._lag_reported:
            self._lag_reported = True
            items.append(Lagged(missed=self._feed.missed_since(self.watermarks, self.tenant_id), watermarks=dict(self.watermarks)))
        return items


class ChangeFeed:
    """Commit log plus live fan-out to bounded subscribers."""

    def __init__(self, *, buffer_size: int = 1024, retention: int = 100_000) -> None:
        self._buffer_size = buffer_size
        self._retention = retention
        self._heads: dict[str, int] = {}
        self._logs: dict[str, deque[ChangeEvent]] = {}
        self._subscribers: dict[str, list[Subscription]] = {}
        self._global: list[Subscription] = []

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def publish(
        self,
        tenant_id: str,
        entity_id: str,
        change_kind: ChangeKind,
        entity_type: EntityType = EntityType.INDICATOR,
    ) -> ChangeEvent:
        seq = self._heads.get(tenant_id, 0) + 1
        self._heads[tenant_id] = seq
        event = ChangeEvent(
            seq=seq,
            tenant_id=tenant_id,
            entity_id=entity_id,
            change_kind=change_kind,
            entity_type=entity_type,
        )
        log = self._logs.get(tenant_id)
        if log is None:
            log = deque(maxlen=self._retention)
            self._logs[tenant_id] = log
        log.append(event)

        for sub in [*self._subscribers.get(tenant_id, ()), *self._global]:
            if not sub._offer(event):
                self._drop(sub)
        return event

    def _drop(self, sub: Subscription) -> None:
        self._detach(sub)
        CHANGEFEED_LAG.inc()
        logger.warning(
            "Dropping lagging change-feed subscriber (tenant=%s, buffer=%d)",
            sub.tenant_id or "*",
            self._buffer_size,
        )

    def _detach(self, sub: Subscription) -> None:
        if sub.tenant_id is None:
            if sub in self._global:
                self._global.remove(sub)
        else:
            subs = self._subscribers.get(sub.tenant_id, [])
            if sub in subs:
                subs.remove(sub)

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def head(self, tenant_id: str) -> int:
        return self._heads.get(tenant_id, 0)

    def tenants(self) -> list[str]:
        return sorted(self._heads)

    def missed_since(self, watermarks: dict[str, int], tenant_id: str | None) -> int:
        tenants = [tenant_id] if tenant_id is not None else list(self._heads)
        return sum(max(0, self.head(t) - watermarks.get(t, 0)) for t in tenants)

    def subscribe(
        self,
        tenant_id: str | None,
        *,
        since: int | dict[str, int] | None = None,
        buffer_size: int | None = None,
    ) -> Subscription:
        """Subscribe to one tenant's events, or to every tenant with ``None``.

        *since* is a starting watermark: events with a greater sequence are
        replayed from the retained log.  When part of that range is no
        longer retained the subscription starts lagged.
        """
        sub = Subscription(self, tenant_id, buffer_size or self._buffer_size)
        tenants = [tenant_id] if tenant_id is not None else list(self._heads)
        if since is None:
            sub.watermarks = {t: self.head(t) for t in tenants}
        else:
            marks = since if isinstance(since, dict) else {t: since for t in tenants}
            sub.watermarks = {t: marks.get(t, 0) for t in tenants}
            for tenant in tenants:
                start = sub.watermarks[tenant]
                log = self._logs.get(tenant)
                if not log or start >= self.head(tenant):
                    continue
                if log[0].seq > start + 1:
                    sub._mark_lagged()
                    break
                for event in log:
                    if event.seq > start and not sub._offer(event):
                        break
                if sub.lagged:
                    break
        if sub.lagged:
            CHANGEFEED_LAG.inc()
            return sub
        if tenant_id is None:
            self._global.append(sub)
        else:
            self._subscribers.setdefault(tenant_id, []).append(sub)
        return sub

    def events_since(self, tenant_id: str, since: int, limit: int = 1000) -> tuple[list[ChangeEvent], bool]:
        """Poll retained events after *since*.  The flag is ``True`` if some were pruned."""
        log = self._logs.get(tenant_id)
        if not log:
            return [], False
        pruned = log[0].seq > since + 1
        events = [e for e in log if e.seq > since][:limit]
        return events, pruned

    def close(self) -> None:
        for subs in list(self._subscribers.values()):
            for sub in list(subs):
                sub.close()
        for sub in list(self._global):
            sub.close()
