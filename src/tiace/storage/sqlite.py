# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""SQLite storage backend built on :mod:`aiosqlite`.

A single connection is shared; every operation runs under one
``asyncio.Lock`` so a transaction is never interleaved with another
coroutine's reads, and change-feed events are published in commit order.
Records are stored as JSON documents with the filterable columns
denormalized next to them.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

import aiosqlite
from pydantic import ValidationError as PydanticValidationError

from tiace.core.constants import ChangeKind, EntityType
from tiace.core.exceptions import (
    BackendUnavailableError,
    ConflictError,
    NotFoundError,
    SerializationError,
    StorageCorruptedError,
    StorageError,
)
from tiace.models.entities import Campaign, Relationship, ThreatActor
from tiace.models.feed import SyncJob
from tiace.models.indicator import Indicator
from tiace.models.tenant import TenantContext
from tiace.storage.base import (
    EnrichmentRecord,
    Entity,
    HealthStatus,
    IndicatorStore,
    SearchCriteria,
    entity_id_of,
)
from tiace.storage.migrations import run_migrations
from tiace.streaming.changefeed import ChangeFeed

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _ts(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _load_indicator(doc: str) -> Indicator:
    try:
        return Indicator.model_validate_json(doc)
    except PydanticValidationError as exc:
        raise SerializationError(f"Stored indicator could not be decoded: {exc}") from exc


def _load_entity(entity_type: str, doc: str) -> Entity:
    try:
        if entity_type == EntityType.THREAT_ACTOR.value:
            return ThreatActor.model_validate_json(doc)
        return Campaign.model_validate_json(doc)
    except PydanticValidationError as exc:
        raise SerializationError(f"Stored entity could not be decoded: {exc}") from exc


class SQLiteStore(IndicatorStore):
    backend_name = "sqlite"

    def __init__(
        self,
        db: aiosqlite.Connection,
        changes: ChangeFeed | None = None,
        *,
        max_batch_size: int = 500,
    ) -> None:
        super().__init__(changes, max_batch_size=max_batch_size)
        self._db = db
        self._lock = asyncio.Lock()

    @classmethod
    async def open(
        cls,
        db_path: Path | str,
        changes: ChangeFeed | None = None,
        *,
        max_batch_size: int = 500,
        auto_migrate: bool = True,
    ) -> SQLiteStore:
        """Connect, enable WAL, and optionally apply pending migrations."""
        try:
            db = await aiosqlite.connect(str(db_path))
        except aiosqlite.Error as exc:
            raise BackendUnavailableError(f"Failed to open database at {db_path}: {exc}") from exc
        try:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA journal_mode=WAL")
            if auto_migrate:
                await run_migrations(db)
        except aiosqlite.Error as exc:
            await db.close()
            msg = f"Failed to initialize database at {db_path}: {exc}"
            raise BackendUnavailableError(msg) from exc
        except StorageCorruptedError:
            await db.close()
            raise
        return cls(db, changes, max_batch_size=max_batch_size)

    async def _run(self, op: Callable[[], Awaitable[T]]) -> T:
        async with self._lock:
            try:
                return await op()
            except aiosqlite.IntegrityError as exc:
                await self._db.rollback()
                raise ConflictError(str(exc)) from exc
            except aiosqlite.OperationalError as exc:
                await self._db.rollback()
                raise BackendUnavailableError(str(exc)) from exc
            except aiosqlite.DatabaseError as exc:
                await self._db.rollback()
                raise StorageError(str(exc)) from exc
            except BaseException:
                await self._db.rollback()
                raise

    # ------------------------------------------------------------------
    # Indicator CRUD
    # ------------------------------------------------------------------

    @staticmethod
    def _indicator_row(ctx: TenantContext, record: Indicator) -> tuple[Any, ...]:
        return (
            ctx.tenant_id,
            record.indicator_id,
            record.kind,
            record.value,
            record.fingerprint(),
            record.severity.value,
            record.confidence,
            _ts(record.first_seen),
            _ts(record.last_seen),
            record.version,
            record.model_dump_json(),
        )

    _INSERT_INDICATOR = (
        "INSERT INTO indicators (tenant_id, indicator_id, kind, value, fingerprint, severity,"
        " confidence, first_seen, last_seen, version, doc) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"
    )

    async def store(self, ctx: TenantContext, indicator: Indicator) -> Indicator:
        record = self._owned(ctx, indicator)
        record.ensure_id()

        async def op() -> Indicator:
            await self._db.execute(self._INSERT_INDICATOR, self._indicator_row(ctx, record))
            await self._db.commit()
            self._emit(ctx, record.indicator_id, ChangeKind.CREATED)
            return record

        return await self._run(op)

    async def _fetch_indicator(self, ctx: TenantContext, indicator_id: str) -> Indicator | None:
        cursor = await self._db.execute(
            "SELECT doc FROM indicators WHERE tenant_id = ? AND indicator_id = ?",
            (ctx.tenant_id, indicator_id),
        )
        row = await cursor.fetchone()
        return _load_indicator(row["doc"]) if row else None

    async def get(self, ctx: TenantContext, indicator_id: str) -> Indicator:
        async def op() -> Indicator:
            record = await self._fetch_indicator(ctx, indicator_id)
            if record is None:
                raise NotFoundError(f"Indicator not found: {indicator_id}")
            return record

        return await self._run(op)

    async def get_many(self, ctx: TenantContext, indicator_ids: Iterable[str]) -> list[Indicator]:
        ids = list(indicator_ids)

        async def op() -> list[Indicator]:
            found: dict[str, Indicator] = {}
            for start in range(0, len(ids), 500):
                chunk = ids[start:start + 500]
                marks = ",".join("?" for _ in chunk)
                cursor = await self._db.execute(
                    f"SELECT indicator_id, doc FROM indicators WHERE tenant_id = ? AND indicator_id IN ({marks})",
                    (ctx.tenant_id, *chunk),
                )
                for row in await cursor.fetchall():
                    found[row["indicator_id"]] = _load_indicator(row["doc"])
            return [found[i] for i in ids if i in found]

        return await self._run(op)

    async def update(self, ctx: TenantContext, indicator: Indicator) -> Indicator:
        record = self._owned(ctx, indicator)

        async def op() -> Indicator:
            current = await self._fetch_indicator(ctx, record.indicator_id)
            if current is None:
                raise NotFoundError(f"Indicator not found: {record.indicator_id}")
            if current.fingerprint() != record.fingerprint():
                raise ConflictError("An update may not change an indicator's kind or value")
            record.last_seen = max(record.last_seen, current.last_seen)
            record.version = current.version + 1
            await self._db.execute(
                "UPDATE indicators SET severity = ?, confidence = ?, first_seen = ?, last_seen = ?,"
                " version = ?, doc = ? WHERE tenant_id = ? AND indicator_id = ?",
                (
                    record.severity.value,
                    record.confidence,
                    _ts(record.first_seen),
                    _ts(record.last_seen),
                    record.version,
                    record.model_dump_json(),
                    ctx.tenant_id,
                    record.indicator_id,
                ),
            )
            await self._db.commit()
            self._emit(ctx, record.indicator_id, ChangeKind.UPDATED)
            return record

        return await self._run(op)

    async def delete(self, ctx: TenantContext, indicator_id: str) -> None:
        async def op() -> None:
            cursor = await self._db.execute(
                "DELETE FROM indicators WHERE tenant_id = ? AND indicator_id = ?",
                (ctx.tenant_id, indicator_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Indicator not found: {indicator_id}")
            await self._db.execute(
                "DELETE FROM enrichment WHERE tenant_id = ? AND indicator_id = ?",
                (ctx.tenant_id, indicator_id),
            )
            await self._db.execute(
                "DELETE FROM edges WHERE tenant_id = ? AND (source_id = ? OR target_id = ?)",
                (ctx.tenant_id, indicator_id, indicator_id),
            )
            await self._db.commit()
            self._emit(ctx, indicator_id, ChangeKind.DELETED)

        await self._run(op)

    async def bulk_store(self, ctx: TenantContext, indicators: list[Indicator]) -> list[str]:
        self._check_batch(indicators)
        records = [self._owned(ctx, i) for i in indicators]

        async def op() -> list[str]:
            await self._db.executemany(
                self._INSERT_INDICATOR, [self._indicator_row(ctx, r) for r in records]
            )
            await self._db.commit()
            for record in records:
                self._emit(ctx, record.indicator_id, ChangeKind.CREATED)
            return [r.indicator_id for r in records]

        return await self._run(op)

    @staticmethod
    def _where(ctx: TenantContext, criteria: SearchCriteria | None) -> tuple[str, list[Any]]:
        clauses = ["tenant_id = ?"]
        params: list[Any] = [ctx.tenant_id]
        if criteria is None:
            return " AND ".join(clauses), params
        if criteria.fingerprint is not None:
            clauses.append("fingerprint = ?")
            params.append(criteria.fingerprint)
        if criteria.kinds:
            clauses.append(f"kind IN ({','.join('?' for _ in criteria.kinds)})")
            params.extend(sorted(criteria.kinds))
        if criteria.values:
            clauses.append(f"value IN ({','.join('?' for _ in criteria.values)})")
            params.extend(sorted(criteria.values))
        if criteria.severities:
            clauses.append(f"severity IN ({','.join('?' for _ in criteria.severities)})")
            params.extend(sorted(s.value for s in criteria.severities))
        if criteria.min_confidence > 0:
            clauses.append("confidence >= ?")
            params.append(criteria.min_confidence)
        if criteria.start is not None:
            clauses.append("last_seen >= ?")
            params.append(_ts(criteria.start))
        if criteria.end is not None:
            clauses.append("first_seen <= ?")
            params.append(_ts(criteria.end))
        return " AND ".join(clauses), params

    async def search(self, ctx: TenantContext, criteria: SearchCriteria) -> list[Indicator]:
        where, params = self._where(ctx, criteria)

        async def op() -> list[Indicator]:
            cursor = await self._db.execute(f"SELECT doc FROM indicators WHERE {where}", params)
            rows = await cursor.fetchall()
            return [i for i in (_load_indicator(r["doc"]) for r in rows) if criteria.matches(i)]

        return await self._run(op)

    async def count(self, ctx: TenantContext, criteria: SearchCriteria | None = None) -> int:
        if criteria is not None and (criteria.text or criteria.tags or criteria.feeds):
            return len(await self.search(ctx, criteria))
        where, params = self._where(ctx, criteria)

        async def op() -> int:
            cursor = await self._db.execute(f"SELECT COUNT(*) FROM indicators WHERE {where}", params)
            row = await cursor.fetchone()
            return int(row[0]) if row else 0

        return await self._run(op)

    async def list_ids(self, ctx: TenantContext) -> list[str]:
        async def op() -> list[str]:
            cursor = await self._db.execute(
                "SELECT indicator_id FROM indicators WHERE tenant_id = ? ORDER BY indicator_id",
                (ctx.tenant_id,),
            )
            return [r["indicator_id"] for r in await cursor.fetchall()]

        return await self._run(op)

    async def find_by_fingerprint(self, ctx: TenantContext, fingerprint: bytes) -> Indicator | None:
        async def op() -> Indicator | None:
            cursor = await self._db.execute(
                "SELECT doc FROM indicators WHERE tenant_id = ? AND fingerprint = ?",
                (ctx.tenant_id, fingerprint),
            )
            row = await cursor.fetchone()
            return _load_indicator(row["doc"]) if row else None

        return await self._run(op)

    # ------------------------------------------------------------------
    # Enrichment records
    # ------------------------------------------------------------------

    async def store_enrichment(self, ctx: TenantContext, record: EnrichmentRecord) -> None:
        async def op() -> None:
            if await self._fetch_indicator(ctx, record.indicator_id) is None:
                raise NotFoundError(f"Indicator not found: {record.indicator_id}")
            await self._db.execute(
                "INSERT OR REPLACE INTO enrichment (tenant_id, indicator_id, doc) VALUES (?, ?, ?)",
                (ctx.tenant_id, record.indicator_id, json.dumps(record.to_dict())),
            )
            await self._db.commit()

        await self._run(op)

    async def get_enrichment(self, ctx: TenantContext, indicator_id: str) -> EnrichmentRecord:
        async def op() -> EnrichmentRecord:
            cursor = await self._db.execute(
                "SELECT doc FROM enrichment WHERE tenant_id = ? AND indicator_id = ?",
                (ctx.tenant_id, indicator_id),
            )
            row = await cursor.fetchone()
            if row is None:
                raise NotFoundError(f"No enrichment for indicator {indicator_id}")
            return EnrichmentRecord.from_dict(json.loads(row["doc"]))

        return await self._run(op)

    async def delete_enrichment(self, ctx: TenantContext, indicator_id: str) -> None:
        async def op() -> None:
            cursor = await self._db.execute(
                "DELETE FROM enrichment WHERE tenant_id = ? AND indicator_id = ?",
                (ctx.tenant_id, indicator_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"No enrichment for indicator {indicator_id}")
            await self._db.commit()

        await self._run(op)

    # ------------------------------------------------------------------
    # Actors and campaigns
    # ------------------------------------------------------------------

    async def store_entity(self, ctx: TenantContext, entity: Entity) -> None:
        record = entity.model_copy(update={"tenant_id": ctx.tenant_id}, deep=True)
        entity_id = entity_id_of(record)

        async def op() -> None:
            cursor = await self._db.execute(
                "SELECT 1 FROM entities WHERE tenant_id = ? AND entity_id = ?",
                (ctx.tenant_id, entity_id),
            )
            existed = await cursor.fetchone() is not None
            await self._db.execute(
                "INSERT OR REPLACE INTO entities (tenant_id, entity_id, entity_type, name, doc)"
                " VALUES (?, ?, ?, ?, ?)",
                (ctx.tenant_id, entity_id, record.entity_type.value, record.name, record.model_dump_json()),
            )
            await self._db.commit()
            self._emit(
                ctx,
                entity_id,
                ChangeKind.UPDATED if existed else ChangeKind.CREATED,
                record.entity_type,
            )

        await self._run(op)

    async def get_entity(self, ctx: TenantContext, entity_id: str) -> Entity:
        async def op() -> Entity:
            cursor = await self._db.execute(
                "SELECT entity_type, doc FROM entities WHERE tenant_id = ? AND entity_id = ?",
                (ctx.tenant_id, entity_id),
            )
            row = await cursor.fetchone()
            if row is None:
                raise NotFoundError(f"Entity not found: {entity_id}")
            return _load_entity(row["entity_type"], row["doc"])

        return await self._run(op)

    async def list_entities(self, ctx: TenantContext, entity_type: EntityType) -> list[Entity]:
        async def op() -> list[Entity]:
            cursor = await self._db.execute(
                "SELECT entity_type, doc FROM entities WHERE tenant_id = ? AND entity_type = ?"
                " ORDER BY entity_id",
                (ctx.tenant_id, entity_type.value),
            )
            return [_load_entity(r["entity_type"], r["doc"]) for r in await cursor.fetchall()]

        return await self._run(op)

    async def _exists(self, ctx: TenantContext, entity_id: str) -> bool:
        cursor = await self._db.execute(
            "SELECT 1 FROM indicators WHERE tenant_id = ? AND indicator_id = ?"
            " UNION ALL SELECT 1 FROM entities WHERE tenant_id = ? AND entity_id = ? LIMIT 1",
            (ctx.tenant_id, entity_id, ctx.tenant_id, entity_id),
        )
        return await cursor.fetchone() is not None

    async def entity_exists(self, ctx: TenantContext, entity_id: str) -> bool:
        async def op() -> bool:
            return await self._exists(ctx, entity_id)

        return await self._run(op)

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    async def store_edges(self, ctx: TenantContext, edges: Iterable[Relationship]) -> int:
        batch = [e.model_copy(update={"tenant_id": ctx.tenant_id}) for e in edges]

        async def op() -> int:
            for edge in batch:
                for endpoint in (edge.source_id, edge.target_id):
                    if not await self._exists(ctx, endpoint):
                        raise NotFoundError(f"Edge endpoint not found: {endpoint}")
            await self._db.executemany(
                "INSERT OR REPLACE INTO edges (tenant_id, source_id, target_id, relationship_type,"
                " confidence, rule_id, doc) VALUES (?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        ctx.tenant_id,
                        e.source_id,
                        e.target_id,
                        e.relationship_type,
                        e.confidence,
                        e.rule_id,
                        e.model_dump_json(),
                    )
                    for e in batch
                ],
            )
            await self._db.commit()
            return len(batch)

        return await self._run(op)

    async def _select_edges(self, sql: str, params: tuple[Any, ...]) -> list[Relationship]:
        cursor = await self._db.execute(sql, params)
        edges: list[Relationship] = []
        for row in await cursor.fetchall():
            try:
                edges.append(Relationship.model_validate_json(row["doc"]))
            except PydanticValidationError as exc:
                raise SerializationError(f"Stored edge could not be decoded: {exc}") from exc
        return edges

    _EDGES_OF = (
        "SELECT doc FROM edges WHERE tenant_id = ? AND (source_id = ? OR target_id = ?)"
        " ORDER BY source_id, target_id, relationship_type"
    )

    async def edges_of(self, ctx: TenantContext, entity_id: str) -> list[Relationship]:
        async def op() -> list[Relationship]:
            return await self._select_edges(self._EDGES_OF, (ctx.tenant_id, entity_id, entity_id))

        return await self._run(op)

    async def delete_edges(self, ctx: TenantContext, keys: Iterable[tuple[str, str, str]]) -> int:
        key_list = list(keys)

        async def op() -> int:
            removed = 0
            for source_id, target_id, rel_type in key_list:
                cursor = await self._db.execute(
                    "DELETE FROM edges WHERE tenant_id = ? AND source_id = ? AND target_id = ?"
                    " AND relationship_type = ?",
                    (ctx.tenant_id, source_id, target_id, rel_type),
                )
                removed += max(cursor.rowcount, 0)
            await self._db.commit()
            return removed

        return await self._run(op)

    async def delete_edges_of(self, ctx: TenantContext, entity_id: str) -> list[Relationship]:
        async def op() -> list[Relationship]:
            edges = await self._select_edges(self._EDGES_OF, (ctx.tenant_id, entity_id, entity_id))
            await self._db.execute(
                "DELETE FROM edges WHERE tenant_id = ? AND (source_id = ? OR target_id = ?)",
                (ctx.tenant_id, entity_id, entity_id),
            )
            await self._db.commit()
            return edges

        return await self._run(op)

    async def all_edges(self, ctx: TenantContext) -> list[Relationship]:
        async def op() -> list[Relationship]:
            return await self._select_edges(
                "SELECT doc FROM edges WHERE tenant_id = ? ORDER BY source_id, target_id, relationship_type",
                (ctx.tenant_id,),
            )

        return await self._run(op)

    # ------------------------------------------------------------------
    # Sync history and audit
    # ------------------------------------------------------------------

    async def save_sync_job(self, ctx: TenantContext, job: SyncJob) -> None:
        async def op() -> None:
            await self._db.execute(
                "INSERT OR REPLACE INTO sync_jobs (tenant_id, job_id, feed_id, status, started_at,"
                " ended_at, doc) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    ctx.tenant_id,
                    job.job_id,
                    job.feed_id,
                    job.status.value,
                    _ts(job.started_at) if job.started_at else None,
                    _ts(job.ended_at) if job.ended_at else None,
                    job.model_dump_json(),
                ),
            )
            await self._db.commit()

        await self._run(op)

    async def list_sync_jobs(
        self, ctx: TenantContext, *, feed_id: str | None = None, limit: int = 100
    ) -> list[SyncJob]:
        sql = "SELECT doc FROM sync_jobs WHERE tenant_id = ?"
        params: list[Any] = [ctx.tenant_id]
        if feed_id is not None:
            sql += " AND feed_id = ?"
            params.append(feed_id)
        sql += " ORDER BY started_at IS NULL, started_at DESC, job_id DESC LIMIT ?"
        params.append(limit)

        async def op() -> list[SyncJob]:
            cursor = await self._db.execute(sql, params)
            return [SyncJob.model_validate_json(r["doc"]) for r in await cursor.fetchall()]

        return await self._run(op)

    async def prune_sync_jobs(self, ctx: TenantContext, before: datetime) -> int:
        async def op() -> int:
            cursor = await self._db.execute(
                "DELETE FROM sync_jobs WHERE tenant_id = ? AND ended_at IS NOT NULL AND ended_at < ?",
                (ctx.tenant_id, _ts(before)),
            )
            await self._db.commit()
            return max(cursor.rowcount, 0)

        return await self._run(op)

    async def save_feed_state(self, ctx: TenantContext, feed_id: str, state: dict[str, Any]) -> None:
        async def op() -> None:
            await self._db.execute(
                "INSERT OR REPLACE INTO feed_state (tenant_id, feed_id, doc) VALUES (?, ?, ?)",
                (ctx.tenant_id, feed_id, json.dumps(state, default=str)),
            )
            await self._db.commit()

        await self._run(op)

    async def load_feed_states(self, ctx: TenantContext) -> dict[str, dict[str, Any]]:
        async def op() -> dict[str, dict[str, Any]]:
            cursor = await self._db.execute(
                "SELECT feed_id, doc FROM feed_state WHERE tenant_id = ? ORDER BY feed_id", (ctx.tenant_id,)
            )
            return {r["feed_id"]: json.loads(r["doc"]) for r in await cursor.fetchall()}

        return await self._run(op)

    async def append_audit(self, ctx: TenantContext, event: dict[str, Any]) -> None:
        async def op() -> None:
            await self._db.execute(
                "INSERT INTO audit_log (tenant_id, resource_id, event_type, timestamp, doc)"
                " VALUES (?, ?, ?, ?, ?)",
                (
                    ctx.tenant_id,
                    event.get("resource_id"),
                    event.get("event_type", "unknown"),
                    event.get("timestamp", ""),
                    json.dumps(event, default=str),
                ),
            )
            await self._db.commit()

        await self._run(op)

    async def list_audit(
        self, ctx: TenantContext, *, resource_id: str | None = None, limit: int = 100
    ) -> list[dict[str, Any]]:
        sql = "SELECT doc FROM audit_log WHERE tenant_id = ?"
        params: list[Any] = [ctx.tenant_id]
        if resource_id is not None:
            sql += " AND resource_id = ?"
            params.append(resource_id)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        async def op() -> list[dict[str, Any]]:
            cursor = await self._db.execute(sql, params)
            return [json.loads(r["doc"]) for r in await cursor.fetchall()]

        return await self._run(op)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health_check(self) -> HealthStatus:
        try:
            async with self._lock:
                cursor = await self._db.execute("SELECT COUNT(*) FROM indicators")
                row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            logger.warning("SQLite health check failed: %s", exc)
            return HealthStatus(healthy=False, backend=self.backend_name, details={"error": str(exc)})
        return HealthStatus(
            healthy=True,
            backend=self.backend_name,
            details={"indicators": int(row[0]) if row else 0},
        )

    async def metrics(self, ctx: TenantContext) -> dict[str, int]:
        tables = {
            "indicators": "indicators",
            "entities": "entities",
            "edges": "edges",
            "enrichment_records": "enrichment",
            "sync_jobs": "sync_jobs",
            "audit_events": "audit_log",
        }

        async def op() -> dict[str, int]:
            counts: dict[str, int] = {}
            for name, table in tables.items():
                cursor = await self._db.execute(
                    f"SELECT COUNT(*) FROM {table} WHERE tenant_id = ?", (ctx.tenant_id,)
                )
                row = await cursor.fetchone()
                counts[name] = int(row[0]) if row else 0
            return counts

        return await self._run(op)

    async def verify(self) -> None:
        async with self._lock:
            try:
                cursor = await self._db.execute("PRAGMA integrity_check")
                row = await cursor.fetchone()
            except aiosqlite.DatabaseError as exc:
                raise StorageCorruptedError(f"Integrity check failed: {exc}") from exc
        result = str(row[0]) if row else "no result"
        if result != "ok":
            raise StorageCorruptedError(f"Integrity check failed: {result}")

    async def close(self) -> None:
        await self._db.close()
