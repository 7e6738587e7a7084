# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Namespaced JSON cache for enrichment lookups.

Context and attribution stages consult this cache before hitting their
lookup tables or remote services.  Keys are derived from a namespace and a
tenant so cached context never crosses tenants.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any

from tiace.cache.base import CacheBackend
from tiace.cache.memory import MemoryCacheBackend
from tiace.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

_manager: CacheManager | None = None


class CacheStats:
    __slots__ = ("hits", "misses")

    def __init__(self) -> None:
        self.hits = 0
        self.misses = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> dict[str, object]:
        return {"hits": self.hits, "misses": self.misses, "hit_rate": round(self.hit_rate, 4)}


class CacheManager:
    def __init__(self, backend: CacheBackend | None = None, default_ttl: int = 3600) -> None:
        self._backend = backend or MemoryCacheBackend()
        self._default_ttl = default_ttl
        self._stats = CacheStats()

    @staticmethod
    def make_key(namespace: str, tenant_id: str, key: str) -> str:
        digest = hashlib.sha256(f"{tenant_id}\x00{key}".encode()).hexdigest()
        return f"{namespace}:{digest}"

    async def get_json(self, namespace: str, tenant_id: str, key: str) -> Any | None:
        raw = await self._backend.get(self.make_key(namespace, tenant_id, key))
        if raw is None:
            self._stats.misses += 1
            return None
        self._stats.hits += 1
        return json.loads(raw)

    async def set_json(
        self,
        namespace: str,
        tenant_id: str,
        key: str,
        value: Any,
        ttl: int | None = None,
    ) -> None:
        await self._backend.set(
            self.make_key(namespace, tenant_id, key),
            json.dumps(value, sort_keys=True),
            ttl=ttl or self._default_ttl,
        )

    async def invalidate(self, namespace: str, tenant_id: str, key: str) -> bool:
        return await self._backend.delete(self.make_key(namespace, tenant_id, key))

    async def clear(self) -> int:
        count = await self._backend.clear()
        logger.info("Enrichment cache cleared: %d entries removed", count)
        return count

    async def size(self) -> int:
        return await self._backend.size()

    @property
    def stats(self) -> CacheStats:
        return self._stats

    @property
    def backend(self) -> CacheBackend:
        return self._backend

    async def close(self) -> None:
        await self._backend.close()


def create_cache_manager(settings: Settings) -> CacheManager:
    """Build a manager for the backend named by ``cache_backend``."""
    if settings.cache_backend == "redis":
        from tiace.cache.redis import RedisCacheBackend

        backend: CacheBackend = RedisCacheBackend(redis_url=settings.redis_url)
    else:
        backend = MemoryCacheBackend()
    return CacheManager(backend=backend, default_ttl=settings.cache_ttl)


def get_cache_manager() -> CacheManager:
    """Return the process-wide :class:`CacheManager`, creating it on first use."""
    global _manager
    if _manager is None:
        _manager = create_cache_manager(get_settings())
    return _manager


def reset_cache_manager() -> None:
    global _manager
    _manager = None
