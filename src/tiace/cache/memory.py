# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Process-local LRU cache with TTL expiry.  The default backend."""

from __future__ import annotations

import time
from collections import OrderedDict

from tiace.cache.base import CacheBackend

_DEFAULT_MAX_ENTRIES = 10_000


class _Slot:
    __slots__ = ("deadline", "payload")

    def __init__(self, payload: str, deadline: float | None) -> None:
        self.payload = payload
        self.deadline = deadline

    def stale(self, now: float) -> bool:
        return self.deadline is not None and now > self.deadline


class MemoryCacheBackend(CacheBackend):
    """Least-recently-used eviction once *max_entries* is exceeded."""

    def __init__(self, max_entries: int = _DEFAULT_MAX_ENTRIES) -> None:
        self._slots: OrderedDict[str, _Slot] = OrderedDict()
        self._max_entries = max_entries

    async def get(self, key: str) -> str | None:
        slot = self._slots.get(key)
        if slot is None:
            return None
        if slot.stale(time.monotonic()):
            del self._slots[key]
            return None
        self._slots.move_to_end(key)
        return slot.payload

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        deadline = time.monotonic() + ttl if ttl is not None else None
        self._slots[key] = _Slot(value, deadline)
        self._slots.move_to_end(key)
        while len(self._slots) > self._max_entries:
            self._slots.popitem(last=False)

    async def delete(self, key: str) -> bool:
        return self._slots.pop(key, None) is not None

    async def clear(self) -> int:
        removed = len(self._slots)
        self._slots.clear()
        return removed

    async def size(self) -> int:
        now = time.monotonic()
        for key in [k for k, s in self._slots.items() if s.stale(now)]:
            del self._slots[key]
        return len(self._slots)

    async def close(self) -> None:
        self._slots.clear()
