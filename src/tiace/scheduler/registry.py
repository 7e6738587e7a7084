# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""FeedRegistry -- the tenant-scoped set of feed configurations.

Reads never lock: they see the mapping published by the last write.
Writes serialize on a short ``asyncio.Lock`` and publish a fresh
read-only mapping, so a reader holding the previous snapshot keeps a
consistent view.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from tiace.audit.events import AuditEventType
from tiace.audit.logger import AuditLogger
from tiace.core.constants import Permission
from tiace.core.exceptions import ConfigurationError, ConflictError, NotFoundError
from tiace.models.feed import FeedConfiguration, QualityMetrics
from tiace.models.tenant import TenantContext

logger = logging.getLogger("tiace.scheduler.registry")

DEFAULT_RELIABILITY = 0.5

_FeedKey = tuple[str, str]


class FeedRegistry:
    def __init__(
        self,
        feeds: Iterable[FeedConfiguration] = (),
        *,
        audit: AuditLogger | None = None,
    ) -> None:
        initial: dict[_FeedKey, FeedConfiguration] = {}
        for config in feeds:
            key = (config.tenant_id, config.feed_id)
            if key in initial:
                raise ConfigurationError(
                    f"Duplicate feed {config.feed_id!r} in tenant {config.tenant_id!r}"
                )
            initial[key] = config
        self._snapshot: Mapping[_FeedKey, FeedConfiguration] = MappingProxyType(initial)
        self._lock = asyncio.Lock()
        self._audit = audit

    @classmethod
    def load(cls, path: str | Path, *, audit: AuditLogger | None = None) -> FeedRegistry:
        """Load feeds from a YAML file with a top-level ``feeds:`` list."""
        try:
            with open(path, encoding="utf-8") as fh:
                data = yaml.safe_load(fh) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigurationError(f"Cannot read feeds file {path}: {exc}") from exc
        entries = data.get("feeds") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            raise ConfigurationError(f"Feeds file {path} has no 'feeds' list")
        feeds = [parse_feed(entry) for entry in entries]
        logger.info("Loaded %d feed configurations from %s", len(feeds), path)
        return cls(feeds, audit=audit)

    # ------------------------------------------------------------------
    # Lock-free reads
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> Mapping[_FeedKey, FeedConfiguration]:
        return self._snapshot

    def get(self, ctx: TenantContext, feed_id: str) -> FeedConfiguration:
        config = self._snapshot.get((ctx.tenant_id, feed_id))
        if config is None:
            raise NotFoundError(f"Feed {feed_id!r} not found")
        return config

    def list_feeds(self, ctx: TenantContext) -> list[FeedConfiguration]:
        return sorted(
            (c for (tenant_id, _), c in self._snapshot.items() if tenant_id == ctx.tenant_id),
            key=lambda c: c.feed_id,
        )

    def all_feeds(self) -> list[FeedConfiguration]:
        return [self._snapshot[key] for key in sorted(self._snapshot)]

    def tenants(self) -> list[str]:
        return sorted({tenant_id for tenant_id, _ in self._snapshot})

    def reliability(self, tenant_id: str, feed_id: str) -> float:
        """Reliability weight of a feed; unknown feeds count as middling."""
        config = self._snapshot.get((tenant_id, feed_id))
        return config.reliability if config is not None else DEFAULT_RELIABILITY

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _publish(self, updated: dict[_FeedKey, FeedConfiguration]) -> None:
        self._snapshot = MappingProxyType(updated)

    async def add(self, ctx: TenantContext, config: FeedConfiguration) -> FeedConfiguration:
        ctx.require(Permission.ADMIN)
        ctx.check_tenant(config.tenant_id)
        async with self._lock:
            key = (ctx.tenant_id, config.feed_id)
            if key in self._snapshot:
                raise ConflictError(f"Feed {config.feed_id!r} already exists")
            self._publish({**self._snapshot, key: config})
        await self._audit_change(ctx, config.feed_id, "added")
        return config

    async def replace(self, ctx: TenantContext, config: FeedConfiguration) -> FeedConfiguration:
        ctx.require(Permission.ADMIN)
        ctx.check_tenant(config.tenant_id)
        async with self._lock:
            key = (ctx.tenant_id, config.feed_id)
            if key not in self._snapshot:
                raise NotFoundError(f"Feed {config.feed_id!r} not found")
            self._publish({**self._snapshot, key: config})
        await self._audit_change(ctx, config.feed_id, "replaced")
        return config

    async def remove(self, ctx: TenantContext, feed_id: str) -> None:
        ctx.require(Permission.ADMIN)
        async with self._lock:
            key = (ctx.tenant_id, feed_id)
            if key not in self._snapshot:
                raise NotFoundError(f"Feed {feed_id!r} not found")
            updated = dict(self._snapshot)
            del updated[key]
            self._publish(updated)
        await self._audit_change(ctx, feed_id, "removed")

    async def set_enabled(self, ctx: TenantContext, feed_id: str, enabled: bool) -> FeedConfiguration:
        return await self._modify(ctx, feed_id, enabled=enabled)

    async def update_quality(
        self, ctx: TenantContext, feed_id: str, quality: QualityMetrics
    ) -> FeedConfiguration:
        """Publish refreshed quality metrics after a sync."""
        async with self._lock:
            key = (ctx.tenant_id, feed_id)
            current = self._snapshot.get(key)
            if current is None:
                raise NotFoundError(f"Feed {feed_id!r} not found")
            updated = current.model_copy(update={"quality": quality})
            self._publish({**self._snapshot, key: updated})
        return updated

    async def _modify(self, ctx: TenantContext, feed_id: str, **changes: Any) -> FeedConfiguration:
        ctx.require(Permission.ADMIN)
        async with self._lock:
            key = (ctx.tenant_id, feed_id)
            current = self._snapshot.get(key)
            if current is None:
                raise NotFoundError(f"Feed {feed_id!r} not found")
            updated = current.model_copy(update=changes)
            self._publish({**self._snapshot, key: updated})
        await self._audit_change(ctx, feed_id, "modified", changes)
        return updated

    async def _audit_change(
        self, ctx: TenantContext, feed_id: str, action: str, details: dict[str, Any] | None = None
    ) -> None:
        logger.info("Feed %s %s", feed_id, action, extra={"tenant_id": ctx.tenant_id})
        if self._audit is not None:
            await self._audit.log_feed_state(
                ctx, AuditEventType.FEED_CHANGED, feed_id, details={"action": action, **(details or {})}
            )


def parse_feed(entry: Any) -> FeedConfiguration:
    """Build a :class:`FeedConfiguration` from one YAML/JSON mapping."""
    if not isinstance(entry, dict):
        raise ConfigurationError(f"Feed entry must be a mapping, got {type(entry).__name__}")
    try:
        return FeedConfiguration.model_validate(entry)
    except PydanticValidationError as exc:
        feed_id = entry.get("feed_id", "<unnamed>")
        raise ConfigurationError(f"Invalid feed {feed_id!r}: {exc}") from exc
