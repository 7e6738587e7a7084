# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Feed management, status and on-demand sync endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Query

from tiace.api.auth import get_engine, tenant_context
from tiace.engine import Engine
from tiace.models.tenant import TenantContext
from tiace.scheduler.registry import parse_feed

router = APIRouter()


@router.get("/feeds")
async def list_feeds(
    ctx: TenantContext = Depends(tenant_context),
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    """Scheduler state, failures, next due time and last job of every feed."""
    feeds = engine.scheduler.status(ctx)
    return {"total": len(feeds), "feeds": feeds}


@router.post("/feeds", status_code=201)
async def add_feed(
    payload: dict[str, Any] = Body(...),
    ctx: TenantContext = Depends(tenant_context),
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    config = parse_feed({**payload, "tenant_id": payload.get("tenant_id", ctx.tenant_id)})
    added = await engine.feeds.add(ctx, config)
    return added.model_dump(mode="json", exclude={"auth"})


@router.get("/feeds/{feed_id}")
async def get_feed(
    feed_id: str,
    ctx: TenantContext = Depends(tenant_context),
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    config = engine.feeds.get(ctx, feed_id)
    return engine.scheduler.feed_state(ctx, feed_id).to_dict(config)


@router.delete("/feeds/{feed_id}")
async def remove_feed(
    feed_id: str,
    ctx: TenantContext = Depends(tenant_context),
    engine: Engine = Depends(get_engine),
) -> dict[str, str]:
    await engine.feeds.remove(ctx, feed_id)
    return {"removed": feed_id}


@router.get("/feeds/{feed_id}/history")
async def feed_history(
    feed_id: str,
    limit: int = Query(default=50, ge=1, le=1000),
    ctx: TenantContext = Depends(tenant_context),
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    jobs = await engine.scheduler.history(ctx, feed_id=feed_id, limit=limit)
    return {"feed_id": feed_id, "jobs": [job.model_dump(mode="json") for job in jobs]}


@router.post("/feeds/sync")
async def sync_all(
    ctx: TenantContext = Depends(tenant_context),
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    """Sync every enabled feed of the tenant and wait for the outcomes."""
    jobs = await engine.scheduler.sync_all(ctx)
    return {"jobs": [job.summary() for job in jobs]}


@router.post("/feeds/cancel")
async def cancel_all(
    ctx: TenantContext = Depends(tenant_context),
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    jobs = await engine.scheduler.cancel(ctx)
    return {"jobs": [job.summary() for job in jobs]}


@router.post("/feeds/{feed_id}/sync")
async def sync_feed(
    feed_id: str,
    ctx: TenantContext = Depends(tenant_context),
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    job = await engine.scheduler.run_now(ctx, feed_id)
    return job.model_dump(mode="json")


@router.post("/feeds/{feed_id}/cancel")
async def cancel_feed(
    feed_id: str,
    ctx: TenantContext = Depends(tenant_context),
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    engine.feeds.get(ctx, feed_id)
    jobs = await engine.scheduler.cancel(ctx, feed_id)
    return {"jobs": [job.summary() for job in jobs]}


@router.post("/feeds/{feed_id}/enable")
async def enable_feed(
    feed_id: str,
    ctx: TenantContext = Depends(tenant_context),
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    """Re-enable a disabled or quarantined feed; it becomes due immediately."""
    runtime = await engine.scheduler.enable(ctx, feed_id)
    return runtime.to_dict(engine.feeds.get(ctx, feed_id))


@router.post("/feeds/{feed_id}/disable")
async def disable_feed(
    feed_id: str,
    ctx: TenantContext = Depends(tenant_context),
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    runtime = await engine.scheduler.disable(ctx, feed_id)
    return runtime.to_dict(engine.feeds.get(ctx, feed_id))
