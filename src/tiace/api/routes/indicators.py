# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Single-indicator endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from tiace.api.auth import get_engine, tenant_context
from tiace.engine import Engine
from tiace.models.tenant import TenantContext

router = APIRouter()


@router.get("/indicators/{indicator_id}")
async def get_indicator(
    indicator_id: str,
    ctx: TenantContext = Depends(tenant_context),
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    """The indicator with its enrichment record, edges and cluster."""
    return await engine.query.detail(ctx, indicator_id)


@router.delete("/indicators/{indicator_id}")
async def delete_indicator(
    indicator_id: str,
    ctx: TenantContext = Depends(tenant_context),
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    deleted = await engine.query.delete(ctx, indicator_id)
    return {"deleted": deleted.indicator_id, "kind": deleted.kind, "value": deleted.value}
