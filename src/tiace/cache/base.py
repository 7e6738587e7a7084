# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Cache backend contract used for enrichment lookups."""

from __future__ import annotations

import abc


class CacheBackend(abc.ABC):
    """Async string key/value store with optional per-entry TTL in seconds."""

    @abc.abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the cached value, or ``None`` when missing or expired."""

    @abc.abstractmethod
    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        """Store *value*; ``ttl=None`` keeps it until evicted."""

    @abc.abstractmethod
    async def delete(self, key: str) -> bool: ...

    @abc.abstractmethod
    async def clear(self) -> int:
        """Drop every entry owned by this backend and return how many were removed."""

    @abc.abstractmethod
    async def size(self) -> int: ...

    @abc.abstractmethod
    async def close(self) -> None: ...
