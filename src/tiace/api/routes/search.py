# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Search, hunt and aggregate endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query

from tiace.api.auth import get_engine, tenant_context
from tiace.api.params import search_params
from tiace.engine import Engine
from tiace.models.tenant import TenantContext
from tiace.query.service import SearchRequest

router = APIRouter()


@router.get("/search")
async def search(
    request: SearchRequest = Depends(search_params),
    ctx: TenantContext = Depends(tenant_context),
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    """Ranked indicators: confidence x threat, then most recently seen."""
    results = await engine.query.search(ctx, request)
    return {"total": len(results), "items": [i.to_canonical() for i in results]}


@router.get("/hunt")
async def hunt(
    request: SearchRequest = Depends(search_params),
    depth: int | None = Query(default=None, ge=0),
    ctx: TenantContext = Depends(tenant_context),
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    """Search plus a bounded walk of the correlation graph from every hit."""
    result = await engine.query.hunt(ctx, request, depth=depth)
    return result.to_dict()


@router.get("/aggregates")
async def aggregates(
    top: int = Query(default=10, ge=1, le=100),
    history: int = Query(default=20, ge=0, le=500),
    ctx: TenantContext = Depends(tenant_context),
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    result = await engine.query.aggregates(ctx, top_n=top, history_limit=history)
    return result.to_dict()
