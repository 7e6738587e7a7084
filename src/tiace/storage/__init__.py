# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Storage layer -- backend contract, in-memory and SQLite backends, migrations."""

from tiace.storage.base import (
    EnrichmentRecord,
    Entity,
    HealthStatus,
    IndicatorStore,
    SearchCriteria,
    entity_id_of,
)
from tiace.storage.database import open_store
from tiace.storage.memory import MemoryStore
from tiace.storage.migrations import run_migrations
from tiace.storage.sqlite import SQLiteStore

__all__ = [
    "EnrichmentRecord",
    "Entity",
    "HealthStatus",
    "IndicatorStore",
    "MemoryStore",
    "SQLiteStore",
    "SearchCriteria",
    "entity_id_of",
    "open_store",
    "run_migrations",
]
