# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Shared test fixtures and configuration."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from tiace.core.config import Settings
from tiace.core.constants import FeedFormat, FeedType
from tiace.engine import Engine
from tiace.models.feed import FeedConfiguration
from tiace.models.indicator import Indicator
from tiace.models.tenant import TenantContext
from tiace.scheduler.registry import FeedRegistry
from tiace.storage.memory import MemoryStore
from tiace.streaming.changefeed import ChangeFeed

FIXTURES_DIR = Path(__file__).parent / "fixtures"

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def fixtures_dir() -> Path:
    return FIXTURES_DIR


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with the in-memory backend and no retry pauses."""
    return Settings(
        _env_file=None,
        db_backend="memory",
        db_path=tmp_path / "tiace.db",
        log_format="text",
        retry_backoff_seconds=0.0,
        request_retries=0,
        cancel_grace_seconds=1.0,
    )


@pytest.fixture
def tenant() -> TenantContext:
    return TenantContext(tenant_id="tenant-a", caller="test")


@pytest.fixture
def other_tenant() -> TenantContext:
    return TenantContext(tenant_id="tenant-b", caller="test")


@pytest.fixture
def changes() -> ChangeFeed:
    return ChangeFeed(buffer_size=64, retention=1000)


@pytest.fixture
def store(changes: ChangeFeed) -> MemoryStore:
    return MemoryStore(changes, max_batch_size=50)


@pytest.fixture
def make_feed() -> Callable[..., FeedConfiguration]:
    """Factory for feed configurations with sensible defaults."""

    def _make(feed_id: str = "feed-a", **overrides: Any) -> FeedConfiguration:
        values: dict[str, Any] = {
            "feed_id": feed_id,
            "tenant_id": "tenant-a",
            "url": f"https://feeds.example.test/{feed_id}",
            "feed_type": FeedType.OPEN_SOURCE,
            "format": FeedFormat.TXT,
            "reliability": 0.6,
        }
        values.update(overrides)
        return FeedConfiguration(**values)

    return _make


@pytest.fixture
def make_indicator() -> Callable[..., Indicator]:
    def _make(kind: str = "domain", value: str = "evil.example.com", **overrides: Any) -> Indicator:
        values: dict[str, Any] = {
            "kind": kind,
            "value": value,
            "first_seen": NOW,
            "last_seen": NOW,
            "confidence": 0.6,
            "source_feeds": {"feed-a"},
        }
        values.update(overrides)
        return Indicator(**values)

    return _make


@pytest.fixture
def feed_registry() -> FeedRegistry:
    return FeedRegistry()


@pytest.fixture
async def engine(settings: Settings, feed_registry: FeedRegistry):
    """A fully wired engine on the memory backend, scheduler loop off."""
    eng = await Engine.create(settings, feeds=feed_registry)
    await eng.start(scheduler=False)
    try:
        yield eng
    finally:
        await eng.close()
