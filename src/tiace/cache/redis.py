# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Redis cache backend, shared across engine processes.

Requires the ``cache`` extra (``pip install 'tiace[cache]'``).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from tiace.cache.base import CacheBackend
from tiace.core.exceptions import ConfigurationError

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

_KEY_PREFIX = "tiace:enrich:"


class RedisCacheBackend(CacheBackend):
    def __init__(self, redis_url: str = "redis://localhost:6379/0") -> None:
        try:
            import redis.asyncio as aioredis
        except ImportError as exc:
            raise ConfigurationError(
                "The 'redis' package is required for TIACE_CACHE_BACKEND=redis. "
                "Install it with: pip install 'tiace[cache]'"
            ) from exc
        self._client: Redis = aioredis.from_url(redis_url, decode_responses=True)

    async def get(self, key: str) -> str | None:
        result = await self._client.get(_KEY_PREFIX + key)
        return str(result) if result is not None else None

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        if ttl is not None:
            await self._client.setex(_KEY_PREFIX + key, ttl, value)
        else:
            await self._client.set(_KEY_PREFIX + key, value)

    async def delete(self, key: str) -> bool:
        return bool(await self._client.delete(_KEY_PREFIX + key))

    async def clear(self) -> int:
        # SCAN rather than KEYS so a large keyspace does not block the server
        removed = 0
        async for key in self._client.scan_iter(match=f"{_KEY_PREFIX}*"):
            removed += int(await self._client.delete(key))
        return removed

    async def size(self) -> int:
        count = 0
        async for _key in self._client.scan_iter(match=f"{_KEY_PREFIX}*"):
            count += 1
        return count

    async def close(self) -> None:
        await self._client.aclose()
