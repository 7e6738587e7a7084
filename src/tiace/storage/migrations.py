# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Versioned schema migrations for the SQLite backend.

Applied versions are tracked in ``schema_migrations``.  Each migration is
idempotent and commits together with its bookkeeping row, so an interrupted
upgrade resumes at the first unrecorded version.  A database stamped with a
version newer than this build knows about is refused.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import NamedTuple

import aiosqlite

from tiace.core.exceptions import StorageCorruptedError

logger = logging.getLogger(__name__)

Step = Callable[[aiosqlite.Connection], Awaitable[None]]


class Migration(NamedTuple):
    version: int
    name: str
    step: Step


MIGRATIONS: list[Migration] = []


def migration(version: int, name: str) -> Callable[[Step], Step]:
    def register(step: Step) -> Step:
        if MIGRATIONS and MIGRATIONS[-1].version >= version:
            raise ValueError(f"migration {version} registered out of order")
        MIGRATIONS.append(Migration(version, name, step))
        return step

    return register


async def schema_version(db: aiosqlite.Connection) -> int:
    await db.execute(
        "CREATE TABLE IF NOT EXISTS schema_migrations ("
        " version INTEGER PRIMARY KEY,"
        " name TEXT NOT NULL,"
        " applied_at TEXT NOT NULL DEFAULT (datetime('now')))"
    )
    await db.commit()
    cursor = await db.execute("SELECT MAX(version) FROM schema_migrations")
    row = await cursor.fetchone()
    return int(row[0] or 0) if row else 0


async def run_migrations(db: aiosqlite.Connection) -> list[Migration]:
    """Bring *db* up to the latest schema; returns the migrations applied."""
    current = await schema_version(db)
    latest = MIGRATIONS[-1].version if MIGRATIONS else 0
    if current > latest:
        raise StorageCorruptedError(
            f"Database schema v{current} is newer than the supported v{latest}"
        )

    pending = [m for m in MIGRATIONS if m.version > current]
    for m in pending:
        logger.info("Applying schema migration v%d (%s)", m.version, m.name)
        await m.step(db)
        await db.execute(
            "INSERT INTO schema_migrations (version, name) VALUES (?, ?)", (m.version, m.name)
        )
        await db.commit()
    if pending:
        logger.info("Schema now at v%d", pending[-1].version)
    return pending


# ---------------------------------------------------------------------------
# Migration 001 -- indicators, enrichment, entities, edges
# ---------------------------------------------------------------------------

_CREATE_INDICATORS = """
CREATE TABLE IF NOT EXISTS indicators (
    tenant_id TEXT NOT NULL,
    indicator_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    value TEXT NOT NULL,
    fingerprint BLOB NOT NULL,
    severity TEXT NOT NULL,
    confidence REAL NOT NULL,
    first_seen TEXT NOT NULL,
    last_seen TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 0,
    doc TEXT NOT NULL,
    PRIMARY KEY (tenant_id, indicator_id),
    UNIQUE (tenant_id, fingerprint)
);
"""

_CREATE_ENRICHMENT = """
CREATE TABLE IF NOT EXISTS enrichment (
    tenant_id TEXT NOT NULL,
    indicator_id TEXT NOT NULL,
    doc TEXT NOT NULL,
    PRIMARY KEY (tenant_id, indicator_id)
);
"""

_CREATE_ENTITIES = """
CREATE TABLE IF NOT EXISTS entities (
    tenant_id TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    name TEXT NOT NULL,
    doc TEXT NOT NULL,
    PRIMARY KEY (tenant_id, entity_id)
);
"""

_CREATE_EDGES = """
CREATE TABLE IF NOT EXISTS edges (
    tenant_id TEXT NOT NULL,
    source_id TEXT NOT NULL,
    target_id TEXT NOT NULL,
    relationship_type TEXT NOT NULL,
    confidence REAL NOT NULL,
    rule_id INTEGER NOT NULL DEFAULT 0,
    doc TEXT NOT NULL,
    PRIMARY KEY (tenant_id, source_id, target_id, relationship_type)
);
"""

_INDEXES_001 = [
    "CREATE INDEX IF NOT EXISTS idx_indicators_kind ON indicators(tenant_id, kind)",
    "CREATE INDEX IF NOT EXISTS idx_indicators_severity ON indicators(tenant_id, severity)",
    "CREATE INDEX IF NOT EXISTS idx_indicators_last_seen ON indicators(tenant_id, last_seen)",
    "CREATE INDEX IF NOT EXISTS idx_edges_target ON edges(tenant_id, target_id)",
    "CREATE INDEX IF NOT EXISTS idx_entities_type ON entities(tenant_id, entity_type)",
]


@migration(1, "initial_schema")
async def _migration_001(db: aiosqlite.Connection) -> None:
    for ddl in (_CREATE_INDICATORS, _CREATE_ENRICHMENT, _CREATE_ENTITIES, _CREATE_EDGES):
        await db.execute(ddl)
    for index in _INDEXES_001:
        await db.execute(index)


# ---------------------------------------------------------------------------
# Migration 002 -- sync history and audit log
# ---------------------------------------------------------------------------

_CREATE_SYNC_JOBS = """
CREATE TABLE IF NOT EXISTS sync_jobs (
    tenant_id TEXT NOT NULL,
    job_id TEXT NOT NULL,
    feed_id TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TEXT,
    ended_at TEXT,
    doc TEXT NOT NULL,
    PRIMARY KEY (tenant_id, job_id)
);
"""

_CREATE_AUDIT_LOG = """
CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id TEXT NOT NULL,
    resource_id TEXT,
    event_type TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    doc TEXT NOT NULL
);
"""


@migration(2, "sync_history_and_audit")
async def _migration_002(db: aiosqlite.Connection) -> None:
    await db.execute(_CREATE_SYNC_JOBS)
    await db.execute(_CREATE_AUDIT_LOG)
    await db.execute(
        "CREATE INDEX IF NOT EXISTS idx_sync_jobs_feed ON sync_jobs(tenant_id, feed_id, started_at)"
    )
    await db.execute(
        "CREATE INDEX IF NOT EXISTS idx_audit_resource ON audit_log(tenant_id, resource_id)"
    )


# ---------------------------------------------------------------------------
# Migration 003 -- scheduler feed state
# ---------------------------------------------------------------------------

_CREATE_FEED_STATE = """
CREATE TABLE IF NOT EXISTS feed_state (
    tenant_id TEXT NOT NULL,
    feed_id TEXT NOT NULL,
    doc TEXT NOT NULL,
    PRIMARY KEY (tenant_id, feed_id)
);
"""


@migration(3, "feed_state")
async def _migration_003(db: aiosqlite.Connection) -> None:
    await db.execute(_CREATE_FEED_STATE)
