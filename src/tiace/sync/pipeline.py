# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Per-job ingestion: fetch -> parse -> dedup -> enrich -> commit -> correlate.

A sync runs in three phases:

1. *Ingest.*  Raw records stream from the feed's connector; each is parsed
   and every canonical indicator is resolved by the identity resolver.
   New indicators stay pending, owned by the job.
2. *Enrich.*  Pending indicators run through the enrichment stages.
3. *Commit.*  Pending indicators are written with ``bulk_store`` in batches
   of at most ``max_batch_size``, then enrichment records, actors,
   campaigns and feed-asserted edges follow.

The cancellation token is checked at every record boundary during the
first two phases.  A cancelled job rolls back its pending indicators, so
nothing it would have bulk-stored becomes observable.  The commit phase
is not interrupted.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from tiace.connectors.base import ConnectorRegistry
from tiace.core.constants import IndicatorKind, Permission, SyncStatus
from tiace.core.deadlines import CancelToken
from tiace.core.exceptions import (
    ConnectorError,
    FilteredOutError,
    NotFoundError,
    ParseError,
    SyncCancelledError,
    TiaceError,
)
from tiace.core.metrics import record_outcome
from tiace.correlation.engine import CorrelationEngine
from tiace.enrichment.pipeline import EnrichmentPipeline
from tiace.identity.actors import ActorDirectory
from tiace.identity.resolver import DecisionKind, IdentityResolver
from tiace.models.entities import Campaign, PendingRelationship, Relationship, ThreatActor
from tiace.models.feed import FeedConfiguration, QualityMetrics, RawRecord, SyncJob
from tiace.models.indicator import Indicator, utcnow
from tiace.models.tenant import TenantContext
from tiace.parsers.base import Parser
from tiace.parsers.registry import ParserRegistry
from tiace.scheduler.registry import FeedRegistry
from tiace.storage.base import EnrichmentRecord, IndicatorStore

logger = logging.getLogger("tiace.sync.pipeline")

_MAX_JOB_ERRORS = 50
_SYNTHESIS = "synthesis"
# Derived indicators never raise the confidence of what they corroborate.
_DERIVED_RELIABILITY = 0.0


@dataclass(slots=True)
class _JobWork:
    """What one job accumulates before its commit phase."""

    owner: str
    created: dict[str, Indicator] = field(default_factory=dict)
    derived: set[str] = field(default_factory=set)
    corroborated: dict[str, Indicator] = field(default_factory=dict)
    enrichment: dict[str, EnrichmentRecord] = field(default_factory=dict)
    actors: list[ThreatActor] = field(default_factory=list)
    campaigns: list[Campaign] = field(default_factory=list)
    relationships: list[PendingRelationship] = field(default_factory=list)
    kinds: set[str] = field(default_factory=set)
    observed: int = 0


class SyncPipeline:
    """Runs one sync job for one feed.

    Parameters
    ----------
    store:
        Storage backend for indicators, enrichment records and job history.
    resolver:
        Identity resolver; holds the job's pending indicators.
    directory:
        Actor and campaign directory used to resolve attribution targets.
    correlation:
        Correlation engine receiving feed-asserted and synthesized edges.
    enrichment:
        Enrichment stage pipeline.
    registry:
        Feed registry, for reliability weights and quality metrics.
    connectors / parsers:
        Dispatch tables keyed by feed type and ``(feed_type, format)``.
    enrich_on_corroborate:
        Re-run enrichment (except synthesis) for committed indicators that
        a sync changed.
    """

    def __init__(
        self,
        store: IndicatorStore,
        resolver: IdentityResolver,
        directory: ActorDirectory,
        correlation: CorrelationEngine,
        enrichment: EnrichmentPipeline,
        registry: FeedRegistry,
        connectors: ConnectorRegistry,
        parsers: ParserRegistry,
        *,
        enrich_on_corroborate: bool = True,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._directory = directory
        self._correlation = correlation
        self._enrichment = enrichment
        self._registry = registry
        self._connectors = connectors
        self._parsers = parsers
        self._enrich_on_corroborate = enrich_on_corroborate

    async def __call__(
        self, ctx: TenantContext, config: FeedConfiguration, job: SyncJob, token: CancelToken
    ) -> SyncJob:
        return await self.run(ctx, config, job=job, token=token)

    async def run(
        self,
        ctx: TenantContext,
        config: FeedConfiguration,
        *,
        job: SyncJob | None = None,
        token: CancelToken | None = None,
    ) -> SyncJob:
        """Run the sync to a terminal status and return the job."""
        ctx.require(Permission.SYNC)
        ctx.check_tenant(config.tenant_id)
        if job is None:
            job = SyncJob(feed_id=config.feed_id, tenant_id=ctx.tenant_id)
        token = token or CancelToken()
        job.status = SyncStatus.RUNNING
        job.started_at = job.started_at or utcnow()
        owner = job.job_id
        work = _JobWork(owner=owner)
        log_extra = {"tenant_id": ctx.tenant_id, "feed_id": config.feed_id, "job_id": owner}

        self._resolver.begin(owner)
        try:
            transport_error = await self._ingest(ctx, config, job, work, token)
            await self._enrich_pending(ctx, config, work, token)
            await self._commit(ctx, config, work)
            await self._link(ctx, config, work)
            if transport_error is not None:
                job.status = SyncStatus.FAILED
                job.failure_reason = transport_error.kind.value
                job.truncated = work.observed > 0
                self._note_error(job, f"{type(transport_error).__name__}: {transport_error}")
            else:
                job.status = SyncStatus.SUCCEEDED
        except SyncCancelledError:
            await self._resolver.rollback(ctx, owner)
            if token.reason == "timeout":
                job.status = SyncStatus.FAILED
                job.failure_reason = "timeout"
            else:
                job.status = SyncStatus.CANCELLED
                job.failure_reason = "cancelled"
            logger.warning("Sync job %s %s", owner, job.failure_reason, extra=log_extra)
        except asyncio.CancelledError:
            await self._resolver.rollback(ctx, owner)
            job.status = SyncStatus.FAILED
            job.failure_reason = "timeout"
            raise
        except TiaceError as exc:
            await self._resolver.rollback(ctx, owner)
            job.status = SyncStatus.FAILED
            job.failure_reason = exc.kind.value
            self._note_error(job, f"{type(exc).__name__}: {exc}")
            logger.error("Sync job %s failed: %s", owner, exc, extra=log_extra)
        except Exception as exc:
            await self._resolver.rollback(ctx, owner)
            job.status = SyncStatus.FAILED
            job.failure_reason = f"{type(exc).__name__}: {exc}"
            logger.exception("Sync job %s crashed", owner, extra=log_extra)
        finally:
            self._resolver.release(owner)
            job.ended_at = utcnow()
            self._record_metrics(config.feed_id, job)

        if job.status is SyncStatus.SUCCEEDED or work.observed:
            await self._update_quality(ctx, config, job, work)
        logger.info(
            "Sync job %s %s: imported=%d updated=%d skipped=%d errored=%d conflicted=%d",
            owner,
            job.status.value,
            job.items_imported,
            job.items_updated,
            job.items_skipped,
            job.items_errored,
            job.items_conflicted,
            extra=log_extra,
        )
        return job

    # ------------------------------------------------------------------
    # Phase 1: ingest
    # ------------------------------------------------------------------

    @staticmethod
    def _checkpoint(token: CancelToken) -> None:
        if token.cancelled:
            raise SyncCancelledError(f"sync {token.reason}")

    async def _ingest(
        self,
        ctx: TenantContext,
        config: FeedConfiguration,
        job: SyncJob,
        work: _JobWork,
        token: CancelToken,
    ) -> ConnectorError | None:
        """Stream and resolve records.  A transport failure ends the stream but keeps what arrived."""
        connector = self._connectors.for_feed(config)
        parser = self._parsers.get(config.feed_type, config.format)
        since = await self._last_watermark(ctx, config.feed_id)
        try:
            async for record in connector.fetch(config, since):
                self._checkpoint(token)
                await self._ingest_record(ctx, config, parser, record, job, work, token)
                if record.watermark:
                    job.watermark = record.watermark
        except ConnectorError as exc:
            logger.warning(
                "Feed %s transport failed after %d records: %s",
                config.feed_id,
                work.observed,
                exc,
                extra={"tenant_id": ctx.tenant_id, "feed_id": config.feed_id},
            )
            return exc
        return None

    async def _ingest_record(
        self,
        ctx: TenantContext,
        config: FeedConfiguration,
        parser: Parser,
        record: RawRecord,
        job: SyncJob,
        work: _JobWork,
        token: CancelToken,
    ) -> None:
        try:
            result = parser(record, config)
        except FilteredOutError:
            job.items_skipped += 1
            return
        except ParseError as exc:
            job.items_errored += 1
            self._note_error(job, f"{exc.kind.value}: {exc}")
            return

        job.items_skipped += result.skipped
        for failure in result.failures:
            if isinstance(failure, FilteredOutError):
                job.items_skipped += 1
            else:
                job.items_errored += 1
                self._note_error(job, f"{failure.kind.value}: {failure}")
        work.actors.extend(result.actors)
        work.campaigns.extend(result.campaigns)
        work.relationships.extend(result.relationships)

        for indicator in result.indicators:
            self._checkpoint(token)
            work.observed += 1
            work.kinds.add(indicator.kind)
            decision = await self._resolver.upsert(
                ctx, indicator, reliability=config.reliability, owner=job.job_id
            )
            if decision.kind is DecisionKind.CREATED:
                job.items_imported += 1
                work.created[decision.indicator_id] = decision.indicator
            elif decision.kind is DecisionKind.CONFLICTED:
                job.items_conflicted += 1
            elif decision.changed:
                job.items_updated += 1
                if not decision.pending:
                    work.corroborated[decision.indicator_id] = decision.indicator
            else:
                job.items_skipped += 1

    # ------------------------------------------------------------------
    # Phase 2: enrich
    # ------------------------------------------------------------------

    async def _enrich_pending(
        self, ctx: TenantContext, config: FeedConfiguration, work: _JobWork, token: CancelToken
    ) -> None:
        for indicator in list(work.created.values()):
            self._checkpoint(token)
            await self._enrich(ctx, config, indicator, work)

    async def _enrich(
        self,
        ctx: TenantContext,
        config: FeedConfiguration,
        indicator: Indicator,
        work: _JobWork,
        *,
        synthesize: bool = True,
    ) -> None:
        skip = () if synthesize and indicator.indicator_id not in work.derived else (_SYNTHESIS,)
        context = await self._enrichment.run(ctx, indicator, skip=skip)
        work.enrichment[indicator.indicator_id] = self._enrichment.record(context)
        work.actors.extend(context.actors)
        work.relationships.extend(context.relationships)
        for derived in context.derived:
            decision = await self._resolver.upsert(
                ctx, derived, reliability=_DERIVED_RELIABILITY, owner=work.owner
            )
            if decision.kind is DecisionKind.CREATED and decision.pending:
                work.derived.add(decision.indicator_id)
                work.created[decision.indicator_id] = decision.indicator
                await self._enrich(ctx, config, decision.indicator, work, synthesize=False)

    # ------------------------------------------------------------------
    # Phase 3: commit
    # ------------------------------------------------------------------

    async def _commit(self, ctx: TenantContext, config: FeedConfiguration, work: _JobWork) -> None:
        owner = work.owner
        batch_size = self._store.max_batch_size
        committed = 0
        while self._resolver.pending_count(owner):
            for rebuilt in self._resolver.take_rebuilt(owner):
                await self._enrich(ctx, config, rebuilt, work, synthesize=False)
            claims = self._resolver.claim(owner, batch_size)
            await self._store.bulk_store(ctx, [claim.indicator for claim in claims])
            await self._resolver.commit(ctx, owner, claims)
            committed += len(claims)
        if committed:
            logger.debug(
                "Committed %d indicators in batches of %d",
                committed,
                batch_size,
                extra={"tenant_id": ctx.tenant_id, "feed_id": config.feed_id},
            )

        for record in work.enrichment.values():
            try:
                await self._store.store_enrichment(ctx, record)
            except NotFoundError:
                logger.debug("Indicator %s vanished before its enrichment was stored", record.indicator_id)

        if self._enrich_on_corroborate:
            for indicator in work.corroborated.values():
                await self._re_enrich(ctx, indicator, work)

    async def _re_enrich(self, ctx: TenantContext, indicator: Indicator, work: _JobWork) -> None:
        contexts = []

        async def mutate(current: Indicator) -> None:
            contexts.append(await self._enrichment.run(ctx, current, skip=(_SYNTHESIS,)))

        try:
            await self._resolver.apply(ctx, indicator, mutate)
        except NotFoundError:
            return
        for context in contexts:
            await self._store.store_enrichment(ctx, self._enrichment.record(context))
            work.actors.extend(context.actors)
            work.relationships.extend(context.relationships)

    async def _link(self, ctx: TenantContext, config: FeedConfiguration, work: _JobWork) -> None:
        """Register actors and campaigns, then resolve and store pending edges."""
        for actor in work.actors:
            if config.feed_id not in actor.source_feeds:
                actor = actor.model_copy(update={"source_feeds": actor.source_feeds | {config.feed_id}})
            await self._directory.register_actor(ctx, actor)
        for campaign in work.campaigns:
            await self._directory.register_campaign(ctx, campaign)

        edges: dict[tuple[str, str, str], Relationship] = {}
        for pending in work.relationships:
            source = await self._endpoint(ctx, pending.source)
            target = await self._endpoint(ctx, pending.target)
            if source is None or target is None or source == target:
                logger.debug("Dropping unresolved relationship %s -> %s", pending.source, pending.target)
                continue
            edge = Relationship(
                tenant_id=ctx.tenant_id,
                source_id=source,
                target_id=target,
                relationship_type=pending.relationship_type,
                confidence=pending.confidence,
                origin=pending.origin or config.feed_id,
            )
            current = edges.get(edge.key)
            if current is None or edge.confidence > current.confidence:
                edges[edge.key] = edge
        if not edges:
            return
        try:
            await self._correlation.add_edges(ctx, edges.values())
        except NotFoundError:
            for edge in edges.values():
                try:
                    await self._correlation.add_edges(ctx, [edge])
                except NotFoundError:
                    logger.debug("Skipping edge %s: endpoint missing", edge.key)

    async def _endpoint(self, ctx: TenantContext, endpoint: tuple[str, ...]) -> str | None:
        if not endpoint:
            return None
        if endpoint[0] == "indicator" and len(endpoint) == 3:
            try:
                return await self._resolver.lookup(ctx, endpoint[1], endpoint[2])
            except ValueError:
                return None
        if endpoint[0] in ("actor", "campaign") and len(endpoint) == 2 and endpoint[1].strip():
            return await self._directory.resolve(ctx, endpoint[0], endpoint[1])
        return None

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    async def _last_watermark(self, ctx: TenantContext, feed_id: str) -> str | None:
        for previous in await self._store.list_sync_jobs(ctx, feed_id=feed_id, limit=20):
            if previous.status is SyncStatus.SUCCEEDED and previous.watermark:
                return previous.watermark
        return None

    @staticmethod
    def _note_error(job: SyncJob, message: str) -> None:
        if len(job.errors) < _MAX_JOB_ERRORS:
            job.errors.append(message)

    @staticmethod
    def _record_metrics(feed_id: str, job: SyncJob) -> None:
        record_outcome(feed_id, "imported", job.items_imported)
        record_outcome(feed_id, "updated", job.items_updated)
        record_outcome(feed_id, "skipped", job.items_skipped)
        record_outcome(feed_id, "errored", job.items_errored)
        record_outcome(feed_id, "conflicted", job.items_conflicted)

    async def _update_quality(
        self, ctx: TenantContext, config: FeedConfiguration, job: SyncJob, work: _JobWork
    ) -> None:
        """Refresh the feed's quality signals from this job's counters.

        * accuracy: share of observations that did not conflict;
        * timeliness: mean freshness of the indicators this job created;
        * completeness: share of items that parsed;
        * uniqueness: share of observations that were new;
        * coverage: share of built-in indicator kinds seen.

        The false-positive rate is an external input and is carried over.
        """
        total = job.items_imported + job.items_updated + job.items_skipped + job.items_conflicted
        items = total + job.items_errored
        fresh = [i.scoring.freshness for i in work.created.values() if i.indicator_id not in work.derived]
        quality = QualityMetrics(
            accuracy=round(1.0 - job.items_conflicted / total, 6) if total else 0.0,
            timeliness=round(sum(fresh) / len(fresh), 6) if fresh else 0.0,
            completeness=round(1.0 - job.items_errored / items, 6) if items else 0.0,
            uniqueness=round(job.items_imported / total, 6) if total else 0.0,
            false_positive_rate=config.quality.false_positive_rate,
            coverage=round(len(work.kinds & set(IndicatorKind)) / len(IndicatorKind), 6),
        )
        try:
            await self._registry.update_quality(ctx, config.feed_id, quality)
        except NotFoundError:
            # Ad-hoc imports are not registered feeds.
            pass
