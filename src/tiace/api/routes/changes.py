# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Change feed polling endpoint.

Clients poll with the ``watermark`` of the previous page as ``since``.
A page with ``lagged: true`` means events were pruned from retention and
the client should resynchronize with a search.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query

from tiace.api.auth import get_engine, tenant_context
from tiace.engine import Engine
from tiace.models.tenant import TenantContext

router = APIRouter()


@router.get("/changes")
async def changes(
    since: int = Query(default=0, ge=0),
    limit: int = Query(default=1000, ge=1, le=10_000),
    ctx: TenantContext = Depends(tenant_context),
    engine: Engine = Depends(get_engine),
) -> dict[str, Any]:
    return engine.query.changes(ctx, since=since, limit=limit).to_dict()
