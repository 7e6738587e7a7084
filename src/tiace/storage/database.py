# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Storage backend selection.

The active backend is controlled by ``TIACE_DB_BACKEND`` (``sqlite`` by
default, ``memory`` for ephemeral runs and tests).
"""

from __future__ import annotations

import logging

from tiace.core.config import Settings
from tiace.core.exceptions import ConfigurationError
from tiace.storage.base import IndicatorStore
from tiace.storage.memory import MemoryStore
from tiace.streaming.changefeed import ChangeFeed

logger = logging.getLogger(__name__)


async def open_store(settings: Settings, changes: ChangeFeed | None = None) -> IndicatorStore:
    """Initialise and return the configured :class:`IndicatorStore`.

    For SQLite the database file is opened in WAL mode and, when
    ``auto_migrate`` is set, pending schema migrations are applied.
    """
    chosen = settings.db_backend.lower()

    if chosen == "memory":
        logger.info("Using in-memory indicator store")
        return MemoryStore(changes, max_batch_size=settings.max_batch_size)

    if chosen == "sqlite":
        from tiace.storage.sqlite import SQLiteStore

        logger.info("Opening SQLite indicator store at %s", settings.db_path)
        store = await SQLiteStore.open(
            settings.db_path,
            changes,
            max_batch_size=settings.max_batch_size,
            auto_migrate=settings.auto_migrate,
        )
        await store.verify()
        return store

    msg = f"Unknown database backend: {settings.db_backend!r}. Expected 'sqlite' or 'memory'."
    raise ConfigurationError(msg)
