# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Composition root: builds and owns every long-lived component.

The identity map (inside :class:`IdentityResolver`) and the edge index
(inside :class:`CorrelationEngine`) are created here exactly once per
process and reached by everything else through this object.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from tiace.audit.logger import AuditLogger
from tiace.cache.manager import CacheManager, create_cache_manager
from tiace.connectors.base import ConnectorRegistry
from tiace.connectors.base import default_registry as default_connectors
from tiace.connectors.http import HttpTransport
from tiace.core.config import Settings, get_settings
from tiace.core.constants import FeedFormat, FeedType
from tiace.core.exceptions import ValidationError
from tiace.correlation.engine import CorrelationEngine
from tiace.enrichment.pipeline import EnrichmentPipeline
from tiace.export.exporter import Exporter
from tiace.identity.actors import ActorDirectory
from tiace.identity.resolver import IdentityResolver
from tiace.models.feed import FeedConfiguration, SyncJob
from tiace.models.tenant import TenantContext
from tiace.parsers.registry import ParserRegistry
from tiace.parsers.registry import default_registry as default_parsers
from tiace.query.service import QueryService
from tiace.scheduler.engine import SyncScheduler
from tiace.scheduler.registry import FeedRegistry
from tiace.storage.base import IndicatorStore
from tiace.storage.database import open_store
from tiace.streaming.changefeed import ChangeFeed
from tiace.sync.pipeline import SyncPipeline

logger = logging.getLogger("tiace.engine")

# File suffix -> format for ``import`` when no format is given.
_SUFFIX_FORMATS: dict[str, FeedFormat] = {
    ".csv": FeedFormat.CSV,
    ".tsv": FeedFormat.TSV,
    ".txt": FeedFormat.TXT,
    ".xml": FeedFormat.RSS,
    ".rss": FeedFormat.RSS,
    ".atom": FeedFormat.ATOM,
}


def guess_format(path: Path, text: str | None = None) -> FeedFormat:
    """Infer the format of a local file from its suffix and, for JSON, its shape."""
    suffix = path.suffix.lower()
    if suffix in _SUFFIX_FORMATS:
        return _SUFFIX_FORMATS[suffix]
    if suffix != ".json":
        raise ValidationError(f"Cannot infer the format of {path.name}; pass one explicitly")
    head = (text or "").lstrip()[:4096]
    if head.startswith("["):
        return FeedFormat.CANONICAL_JSON
    if '"Event"' in head or '"Attribute"' in head:
        return FeedFormat.MISP_JSON
    if '"objects"' in head or '"type": "bundle"' in head or '"spec_version"' in head:
        return FeedFormat.STIX2
    return FeedFormat.JSON


@dataclass
class Engine:
    settings: Settings
    changes: ChangeFeed
    store: IndicatorStore
    audit: AuditLogger
    cache: CacheManager
    feeds: FeedRegistry
    resolver: IdentityResolver
    directory: ActorDirectory
    correlation: CorrelationEngine
    enrichment: EnrichmentPipeline
    connectors: ConnectorRegistry
    parsers: ParserRegistry
    pipeline: SyncPipeline
    scheduler: SyncScheduler
    query: QueryService
    exporter: Exporter

    @classmethod
    async def create(
        cls,
        settings: Settings | None = None,
        *,
        feeds: FeedRegistry | None = None,
        transport: HttpTransport | None = None,
    ) -> Engine:
        """Open the store and wire every component from *settings*."""
        settings = settings or get_settings()
        changes = ChangeFeed(buffer_size=settings.changefeed_buffer, retention=settings.changefeed_retention)
        store = await open_store(settings, changes)
        audit = AuditLogger(store, log_path=Path(settings.audit_log_path) if settings.audit_log_path else None)
        cache = create_cache_manager(settings)

        if feeds is None:
            feeds = FeedRegistry.load(settings.feeds_file, audit=audit) if settings.feeds_file else FeedRegistry(audit=audit)

        resolver = IdentityResolver.from_settings(store, settings, audit=audit)
        directory = ActorDirectory(store)
        correlation = CorrelationEngine.from_settings(store, changes, directory, settings)
        enrichment = EnrichmentPipeline.from_settings(settings, feeds.reliability, cache=cache)
        connectors = default_connectors(transport or HttpTransport.from_settings(settings))
        parsers = default_parsers()
        pipeline = SyncPipeline(
            store,
            resolver,
            directory,
            correlation,
            enrichment,
            feeds,
            connectors,
            parsers,
            enrich_on_corroborate=settings.enrich_on_corroborate,
        )
        scheduler = SyncScheduler.from_settings(feeds, store, pipeline, settings, audit=audit)
        await scheduler.restore()
        query = QueryService.from_settings(
            store,
            changes,
            settings,
            correlation=correlation,
            directory=directory,
            resolver=resolver,
            audit=audit,
        )
        exporter = Exporter(store)
        logger.info(
            "Engine ready: backend=%s feeds=%d tenants=%d",
            settings.db_backend,
            len(feeds.snapshot),
            len(feeds.tenants()),
        )
        return cls(
            settings=settings,
            changes=changes,
            store=store,
            audit=audit,
            cache=cache,
            feeds=feeds,
            resolver=resolver,
            directory=directory,
            correlation=correlation,
            enrichment=enrichment,
            connectors=connectors,
            parsers=parsers,
            pipeline=pipeline,
            scheduler=scheduler,
            query=query,
            exporter=exporter,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, *, scheduler: bool = True) -> None:
        """Start the correlation consumer and, optionally, the periodic scheduler."""
        self.correlation.start()
        if scheduler:
            await self.scheduler.start()

    async def close(self) -> None:
        if self.scheduler.running:
            await self.scheduler.stop()
        await self.correlation.stop()
        self.changes.close()
        await self.cache.close()
        await self.store.close()
        logger.info("Engine closed")

    async def __aenter__(self) -> Engine:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Local import
    # ------------------------------------------------------------------

    async def import_file(
        self,
        ctx: TenantContext,
        path: str | Path,
        *,
        fmt: FeedFormat | str | None = None,
        feed_id: str | None = None,
        reliability: float = 0.5,
    ) -> SyncJob:
        """Ingest a local file (or directory) through the full sync pipeline.

        The import runs as an ad-hoc feed of type ``custom`` with a
        ``file://`` URL, so parsing, dedup, enrichment and correlation are
        exactly those of a scheduled sync.
        """
        path = Path(path).resolve()
        if fmt is None:
            sample = path.read_text(encoding="utf-8")[:4096] if path.is_file() else None
            fmt = guess_format(path, sample)
        try:
            feed_format = FeedFormat(str(fmt).lower())
        except ValueError as exc:
            raise ValidationError(f"Unsupported import format: {fmt!r}") from exc
        config = FeedConfiguration(
            feed_id=feed_id or f"import-{path.stem}",
            tenant_id=ctx.tenant_id,
            url=path.as_uri(),
            feed_type=FeedType.CUSTOM,
            format=feed_format,
            reliability=reliability,
        )
        job = await self.pipeline.run(ctx, config)
        await self.store.save_sync_job(ctx, job)
        return job
