# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""SyncScheduler -- drives feed synchronization on interval or cron cadences.

Uses pure asyncio.  A background loop started during ``tiace serve`` ticks
every ``scheduler_tick_seconds``; on each tick feeds that are due become
Scheduled and are dispatched while workers are free.  Dispatch is also
re-run whenever a job finishes, so on-demand syncs work without the loop.

Per-feed lifecycle::

    Idle -> Scheduled -> Running -> Succeeded | Failed | Cancelled
    Failed -> Backoff(n) -> Scheduled ...   (Quarantined after N failures)

Guarantees:

* at most one job in flight per feed;
* never more than ``pool_size`` jobs in flight, and never more than the
  per-feed-type cap for any type;
* when more feeds are scheduled than workers are free, selection is by
  ``(next_due asc, priority desc)``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from tiace.audit.events import AuditEventType
from tiace.audit.logger import AuditLogger
from tiace.core.config import Settings
from tiace.core.constants import FeedState, FeedType, Permission, SyncStatus
from tiace.core.deadlines import CancelToken
from tiace.core.exceptions import ConflictError, NotFoundError, QuarantinedError
from tiace.core.metrics import SYNC_DURATION, SYNC_IN_FLIGHT
from tiace.models.feed import FeedConfiguration, SyncJob
from tiace.models.indicator import utcnow
from tiace.models.tenant import TenantContext, system_context
from tiace.scheduler.cron import CronParseError, next_due_from_cron
from tiace.scheduler.registry import FeedRegistry
from tiace.scheduler.state import WAITING_STATES, FeedRuntime, backoff_delay
from tiace.storage.base import IndicatorStore

logger = logging.getLogger("tiace.scheduler.engine")

SyncRunner = Callable[[TenantContext, FeedConfiguration, SyncJob, CancelToken], Awaitable[SyncJob]]

_PRUNE_INTERVAL = timedelta(hours=1)


@dataclass(slots=True)
class _ActiveJob:
    ctx: TenantContext
    config: FeedConfiguration
    job: SyncJob
    token: CancelToken = field(default_factory=CancelToken)
    watcher: asyncio.Task[None] | None = None


class SyncScheduler:
    """Asyncio scheduler with a bounded worker pool for feed syncs."""

    def __init__(
        self,
        registry: FeedRegistry,
        store: IndicatorStore,
        runner: SyncRunner,
        *,
        audit: AuditLogger | None = None,
        pool_size: int = 4,
        per_type_caps: Mapping[str, int] | None = None,
        backoff_base: float = 60.0,
        backoff_ceiling: float = 3600.0,
        max_failures: int = 10,
        sync_timeout: float | None = 900.0,
        cancel_grace: float = 10.0,
        tick_seconds: float = 15.0,
        history_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._registry = registry
        self._store = store
        self._runner = runner
        self._audit = audit
        self._pool_size = max(1, pool_size)
        self._per_type_caps = dict(per_type_caps or {})
        self._backoff_base = backoff_base
        self._backoff_ceiling = backoff_ceiling
        self._max_failures = max_failures
        self._sync_timeout = sync_timeout
        self._cancel_grace = cancel_grace
        self._tick_seconds = tick_seconds
        self._history = timedelta(days=history_days)
        self._clock = clock

        self._feeds: dict[tuple[str, str], FeedRuntime] = {}
        self._saved: dict[tuple[str, str], dict[str, Any]] = {}
        self._restored: set[str] = set()
        self._active: dict[tuple[str, str], _ActiveJob] = {}
        self._waiters: dict[tuple[str, str], list[asyncio.Future[SyncJob]]] = {}
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self._last_prune: datetime | None = None

    @classmethod
    def from_settings(
        cls,
        registry: FeedRegistry,
        store: IndicatorStore,
        runner: SyncRunner,
        settings: Settings,
        *,
        audit: AuditLogger | None = None,
    ) -> SyncScheduler:
        return cls(
            registry,
            store,
            runner,
            audit=audit,
            pool_size=settings.worker_pool_size,
            per_type_caps=settings.per_type_concurrency,
            backoff_base=settings.backoff_base_seconds,
            backoff_ceiling=settings.backoff_ceiling_seconds,
            max_failures=settings.max_consecutive_failures,
            sync_timeout=settings.sync_timeout_seconds,
            cancel_grace=settings.cancel_grace_seconds,
            tick_seconds=settings.scheduler_tick_seconds,
            history_days=settings.sync_history_days,
        )

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        return len(self._active)

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the scheduler background loop."""
        if self._running:
            return
        await self.restore()
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="tiace-scheduler")
        logger.info(
            "Scheduler started (tick=%ss, workers=%d)", self._tick_seconds, self._pool_size
        )

    async def stop(self) -> None:
        """Stop ticking and cancel every in-flight job cooperatively."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        await self._cancel_active(list(self._active.values()))
        logger.info("Scheduler stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            await asyncio.sleep(self._tick_seconds)

    async def tick(self) -> list[SyncJob]:
        """Promote due feeds to Scheduled and dispatch.  Returns the jobs launched."""
        await self.restore()
        now = self._clock()
        self._refresh(now)
        for runtime in self._feeds.values():
            if (
                runtime.state in WAITING_STATES
                and not runtime.in_flight
                and runtime.next_due is not None
                and runtime.next_due <= now
            ):
                runtime.state = FeedState.SCHEDULED
        launched = self._dispatch()
        await self._prune_history(now)
        return launched

    # ------------------------------------------------------------------
    # Feed bookkeeping
    # ------------------------------------------------------------------

    def _refresh(self, now: datetime) -> None:
        """Align runtimes with the current registry snapshot."""
        snapshot = self._registry.snapshot
        for key, config in snapshot.items():
            runtime = self._feeds.get(key)
            if runtime is None:
                runtime = FeedRuntime(tenant_id=key[0], feed_id=key[1], next_due=now)
                if (record := self._saved.pop(key, None)) is not None:
                    runtime.restore(record, now)
                self._feeds[key] = runtime
            if runtime.in_flight:
                continue
            if not config.enabled:
                if runtime.state is not FeedState.DISABLED:
                    runtime.state = FeedState.DISABLED
            elif runtime.state is FeedState.DISABLED:
                runtime.state = FeedState.IDLE
                runtime.next_due = now
        for key in list(self._feeds):
            if key not in snapshot and not self._feeds[key].in_flight:
                del self._feeds[key]

    async def restore(self, tenant_id: str | None = None) -> None:
        """Load persisted feed records (state, failures, next due) from the store.

        Each tenant is read once per scheduler.  Records apply to feeds this
        process has not run yet, so a quarantine or backoff outlives a restart.
        """
        tenants = [tenant_id] if tenant_id is not None else self._registry.tenants()
        for tenant in tenants:
            if tenant in self._restored:
                continue
            records = await self._store.load_feed_states(system_context(tenant))
            self._restored.add(tenant)
            now = self._clock()
            for feed_id, record in records.items():
                runtime = self._feeds.get((tenant, feed_id))
                if runtime is None:
                    self._saved[(tenant, feed_id)] = record
                elif runtime.last_job is None and not runtime.in_flight:
                    runtime.restore(record, now)

    async def _persist(self, runtime: FeedRuntime) -> None:
        await self._store.save_feed_state(
            system_context(runtime.tenant_id), runtime.feed_id, runtime.persisted()
        )

    def _runtime(self, ctx: TenantContext, feed_id: str) -> tuple[FeedConfiguration, FeedRuntime]:
        config = self._registry.get(ctx, feed_id)
        self._refresh(self._clock())
        return config, self._feeds[(ctx.tenant_id, feed_id)]

    def _next_due(self, config: FeedConfiguration, now: datetime) -> datetime:
        if config.schedule:
            try:
                return next_due_from_cron(config.schedule, now)
            except CronParseError:
                logger.error(
                    "Invalid cron %r for feed %s; falling back to interval",
                    config.schedule,
                    config.feed_id,
                    extra={"tenant_id": config.tenant_id, "feed_id": config.feed_id},
                )
        return now + timedelta(minutes=config.interval_minutes)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _type_has_capacity(self, feed_type: FeedType) -> bool:
        cap = self._per_type_caps.get(feed_type.value)
        if cap is None:
            return True
        return sum(1 for a in self._active.values() if a.config.feed_type is feed_type) < cap

    def _dispatch(self) -> list[SyncJob]:
        """Launch scheduled feeds while workers are free.  Never suspends."""
        snapshot = self._registry.snapshot
        candidates: list[tuple[FeedRuntime, FeedConfiguration]] = []
        for runtime in self._feeds.values():
            config = snapshot.get(runtime.key)
            if runtime.state is FeedState.SCHEDULED and not runtime.in_flight and config is not None:
                candidates.append((runtime, config))
        candidates.sort(
            key=lambda rc: (rc[0].next_due or self._clock(), -rc[1].priority, rc[0].key)
        )

        launched: list[SyncJob] = []
        for runtime, config in candidates:
            if len(self._active) >= self._pool_size:
                break
            if not self._type_has_capacity(config.feed_type):
                continue
            launched.append(self._launch(runtime, config))
        return launched

    def _launch(self, runtime: FeedRuntime, config: FeedConfiguration) -> SyncJob:
        ctx = system_context(config.tenant_id)
        job = SyncJob(
            feed_id=config.feed_id,
            tenant_id=config.tenant_id,
            status=SyncStatus.RUNNING,
            started_at=self._clock(),
        )
        active = _ActiveJob(ctx=ctx, config=config, job=job)
        self._active[runtime.key] = active
        runtime.state = FeedState.RUNNING
        runtime.running_job_id = job.job_id
        active.watcher = asyncio.create_task(self._execute(runtime, active), name=f"sync-{job.job_id}")
        logger.info(
            "Dispatched sync job %s for feed %s",
            job.job_id,
            config.feed_id,
            extra={"tenant_id": config.tenant_id, "feed_id": config.feed_id, "job_id": job.job_id},
        )
        return job

    async def _execute(self, runtime: FeedRuntime, active: _ActiveJob) -> None:
        ctx, config, job, token = active.ctx, active.config, active.job, active.token
        SYNC_IN_FLIGHT.inc()
        try:
            await self._store.save_sync_job(ctx, job)
            work = asyncio.create_task(self._runner(ctx, config, job, token))
            signal = asyncio.create_task(token.wait())
            try:
                done, _ = await asyncio.wait(
                    {work, signal}, timeout=self._sync_timeout, return_when=asyncio.FIRST_COMPLETED
                )
                if work not in done:
                    token.cancel("timeout")
                    done, _ = await asyncio.wait({work}, timeout=self._cancel_grace)
                    if work not in done:
                        work.cancel()
                        with contextlib.suppress(asyncio.CancelledError):
                            await work
                        job.status = SyncStatus.FAILED
                        job.failure_reason = "timeout"
                        logger.error(
                            "Sync job %s ignored cancellation past the %.1fs grace period",
                            job.job_id,
                            self._cancel_grace,
                            extra={"feed_id": config.feed_id, "job_id": job.job_id},
                        )
                if work.done() and not work.cancelled() and work.exception() is not None:
                    exc = work.exception()
                    job.status = SyncStatus.FAILED
                    job.failure_reason = job.failure_reason or f"{type(exc).__name__}: {exc}"
                    logger.error(
                        "Sync job %s crashed: %s",
                        job.job_id,
                        exc,
                        extra={"feed_id": config.feed_id, "job_id": job.job_id},
                    )
            finally:
                signal.cancel()

            if not job.is_terminal:
                job.status = SyncStatus.FAILED
                job.failure_reason = job.failure_reason or "sync ended without a terminal status"
            job.ended_at = job.ended_at or self._clock()
            await self._finish(runtime, active)
        finally:
            SYNC_IN_FLIGHT.dec()
            self._active.pop(runtime.key, None)
            runtime.running_job_id = None
            for waiter in self._waiters.pop(runtime.key, []):
                if not waiter.done():
                    waiter.set_result(job)
            self._dispatch()

    async def _finish(self, runtime: FeedRuntime, active: _ActiveJob) -> None:
        ctx, config, job = active.ctx, active.config, active.job
        now = self._clock()
        runtime.last_job = job
        if job.duration_seconds is not None:
            SYNC_DURATION.labels(feed=config.feed_id).observe(job.duration_seconds)

        if job.status is SyncStatus.SUCCEEDED:
            runtime.state = FeedState.SUCCEEDED
            runtime.consecutive_failures = 0
            runtime.last_error = None
            runtime.next_due = self._next_due(config, now)
        elif job.status is SyncStatus.CANCELLED:
            runtime.state = FeedState.CANCELLED
            runtime.next_due = self._next_due(config, now)
            if self._audit is not None:
                await self._audit.log_feed_state(
                    ctx, AuditEventType.SYNC_CANCELLED, config.feed_id, details={"job_id": job.job_id}
                )
        else:
            runtime.consecutive_failures += 1
            runtime.last_error = job.failure_reason
            if runtime.consecutive_failures >= self._max_failures:
                runtime.state = FeedState.QUARANTINED
                runtime.next_due = None
                logger.error(
                    "Feed %s quarantined after %d consecutive failures",
                    config.feed_id,
                    runtime.consecutive_failures,
                    extra={"tenant_id": config.tenant_id, "feed_id": config.feed_id},
                )
                if self._audit is not None:
                    await self._audit.log_feed_state(
                        ctx,
                        AuditEventType.FEED_QUARANTINED,
                        config.feed_id,
                        details={
                            "consecutive_failures": runtime.consecutive_failures,
                            "last_error": job.failure_reason,
                        },
                    )
            else:
                delay = backoff_delay(
                    runtime.consecutive_failures, base=self._backoff_base, ceiling=self._backoff_ceiling
                )
                runtime.state = FeedState.BACKOFF
                runtime.next_due = now + delay
                logger.warning(
                    "Feed %s failed (%s); backing off %.0fs",
                    config.feed_id,
                    job.failure_reason,
                    delay.total_seconds(),
                    extra={"tenant_id": config.tenant_id, "feed_id": config.feed_id},
                )

        await self._persist(runtime)
        await self._store.save_sync_job(ctx, job)

    # ------------------------------------------------------------------
    # On-demand operations
    # ------------------------------------------------------------------

    async def run_now(self, ctx: TenantContext, feed_id: str) -> SyncJob:
        """Sync one feed as soon as a worker is free and wait for the outcome."""
        ctx.require(Permission.SYNC)
        await self.restore(ctx.tenant_id)
        config, runtime = self._runtime(ctx, feed_id)
        if runtime.state is FeedState.QUARANTINED:
            raise QuarantinedError(f"Feed {feed_id!r} is quarantined; re-enable it first")
        if not config.enabled:
            raise ConflictError(f"Feed {feed_id!r} is disabled")
        if runtime.in_flight:
            raise ConflictError(f"Feed {feed_id!r} already has a sync in flight")
        waiter = self._wait_for(runtime)
        runtime.state = FeedState.SCHEDULED
        runtime.next_due = self._clock()
        self._dispatch()
        return await waiter

    async def sync_all(self, ctx: TenantContext) -> list[SyncJob]:
        """Sync every enabled, non-quarantined feed of the tenant."""
        ctx.require(Permission.SYNC)
        await self.restore(ctx.tenant_id)
        self._refresh(self._clock())
        waiters: list[asyncio.Future[SyncJob]] = []
        for config in self._registry.list_feeds(ctx):
            runtime = self._feeds[(ctx.tenant_id, config.feed_id)]
            if not config.enabled or runtime.state is FeedState.QUARANTINED:
                logger.info("Skipping feed %s (%s)", config.feed_id, runtime.state.value)
                continue
            waiters.append(self._wait_for(runtime))
            if not runtime.in_flight:
                runtime.state = FeedState.SCHEDULED
                runtime.next_due = self._clock()
        self._dispatch()
        return list(await asyncio.gather(*waiters))

    def _wait_for(self, runtime: FeedRuntime) -> asyncio.Future[SyncJob]:
        waiter: asyncio.Future[SyncJob] = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(runtime.key, []).append(waiter)
        return waiter

    async def cancel(self, ctx: TenantContext, feed_id: str | None = None) -> list[SyncJob]:
        """Cancel the tenant's in-flight jobs (or one feed's) and wait for them to wind down."""
        ctx.require(Permission.SYNC)
        targets = [
            active
            for key, active in self._active.items()
            if key[0] == ctx.tenant_id and (feed_id is None or key[1] == feed_id)
        ]
        cancelled = [a.job for a in targets]
        now = self._clock()
        for runtime in list(self._feeds.values()):
            if runtime.tenant_id != ctx.tenant_id or (feed_id is not None and runtime.feed_id != feed_id):
                continue
            if runtime.state is FeedState.SCHEDULED and not runtime.in_flight:
                cancelled.append(self._cancel_scheduled(runtime, now))
                await self._persist(runtime)
        await self._cancel_active(targets)
        return cancelled

    def _cancel_scheduled(self, runtime: FeedRuntime, now: datetime) -> SyncJob:
        """Withdraw a feed that was waiting for a worker."""
        job = SyncJob(
            feed_id=runtime.feed_id,
            tenant_id=runtime.tenant_id,
            status=SyncStatus.CANCELLED,
            failure_reason="cancelled",
            started_at=now,
            ended_at=now,
        )
        runtime.state = FeedState.CANCELLED
        runtime.last_job = job
        config = self._registry.snapshot.get(runtime.key)
        if config is not None:
            runtime.next_due = self._next_due(config, now)
        for waiter in self._waiters.pop(runtime.key, []):
            if not waiter.done():
                waiter.set_result(job)
        return job

    async def _cancel_active(self, targets: list[_ActiveJob]) -> None:
        for active in targets:
            active.token.cancel("cancelled")
        watchers = [a.watcher for a in targets if a.watcher is not None]
        if watchers:
            await asyncio.gather(*watchers, return_exceptions=True)

    async def wait_idle(self) -> None:
        """Wait until no job is in flight."""
        while self._active:
            watchers = [a.watcher for a in self._active.values() if a.watcher is not None]
            await asyncio.gather(*watchers, return_exceptions=True)

    # ------------------------------------------------------------------
    # Operator controls and status
    # ------------------------------------------------------------------

    async def enable(self, ctx: TenantContext, feed_id: str) -> FeedRuntime:
        """Re-enable a quarantined or disabled feed; it becomes due immediately."""
        ctx.require(Permission.ADMIN)
        await self.restore(ctx.tenant_id)
        config = self._registry.get(ctx, feed_id)
        if not config.enabled:
            await self._registry.set_enabled(ctx, feed_id, True)
        _, runtime = self._runtime(ctx, feed_id)
        previous = runtime.state
        if not runtime.in_flight:
            runtime.state = FeedState.IDLE
            runtime.next_due = self._clock()
        runtime.consecutive_failures = 0
        runtime.last_error = None
        await self._persist(runtime)
        logger.info("Feed %s re-enabled (was %s)", feed_id, previous.value)
        if self._audit is not None:
            await self._audit.log_feed_state(
                ctx, AuditEventType.FEED_REENABLED, feed_id, details={"previous_state": previous.value}
            )
        return runtime

    async def disable(self, ctx: TenantContext, feed_id: str) -> FeedRuntime:
        ctx.require(Permission.ADMIN)
        await self.restore(ctx.tenant_id)
        await self._registry.set_enabled(ctx, feed_id, False)
        _, runtime = self._runtime(ctx, feed_id)
        await self._persist(runtime)
        return runtime

    def feed_state(self, ctx: TenantContext, feed_id: str) -> FeedRuntime:
        _, runtime = self._runtime(ctx, feed_id)
        return runtime

    def status(self, ctx: TenantContext) -> list[dict[str, object]]:
        """Per-feed scheduler state, failures, next due time and last job."""
        ctx.require(Permission.READ)
        self._refresh(self._clock())
        report = []
        for config in self._registry.list_feeds(ctx):
            runtime = self._feeds.get((ctx.tenant_id, config.feed_id))
            if runtime is None:
                raise NotFoundError(f"Feed {config.feed_id!r} not found")
            report.append(runtime.to_dict(config))
        return report

    async def history(
        self, ctx: TenantContext, *, feed_id: str | None = None, limit: int = 100
    ) -> list[SyncJob]:
        ctx.require(Permission.READ)
        return await self._store.list_sync_jobs(ctx, feed_id=feed_id, limit=limit)

    async def _prune_history(self, now: datetime) -> None:
        if self._last_prune is not None and now - self._last_prune < _PRUNE_INTERVAL:
            return
        self._last_prune = now
        cutoff = now - self._history
        for tenant_id in self._registry.tenants():
            removed = await self._store.prune_sync_jobs(system_context(tenant_id), cutoff)
            if removed:
                logger.info(
                    "Pruned %d sync jobs older than %s",
                    removed,
                    cutoff.isoformat(),
                    extra={"tenant_id": tenant_id},
                )
