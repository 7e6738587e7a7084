# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""API endpoints for indicator export and TAXII 2.1 access."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from fastapi.responses import JSONResponse

from tiace.api.auth import get_engine, tenant_context
from tiace.api.params import search_params
from tiace.engine import Engine
from tiace.export.taxii import (
    DEFAULT_COLLECTION_ID,
    TAXII_MEDIA_TYPE,
    format_taxii_api_root,
    format_taxii_collections,
    format_taxii_discovery,
    format_taxii_objects,
)
from tiace.models.tenant import TenantContext
from tiace.query.service import SearchRequest

router = APIRouter()


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------

@router.get("/export/{fmt}")
async def export_indicators(
    fmt: str,
    request: SearchRequest = Depends(search_params),
    ctx: TenantContext = Depends(tenant_context),
    engine: Engine = Depends(get_engine),
) -> Response:
    """Export the tenant's matching indicators as stix, misp, json, csv or yara."""
    result = await engine.exporter.export(ctx, fmt, request.criteria())
    return Response(
        content=result.content,
        media_type=result.media_type,
        headers={
            "Content-Disposition": f'attachment; filename="{result.filename}"',
            "X-Export-Count": str(result.count),
        },
    )


# ---------------------------------------------------------------------------
# TAXII endpoints
# ---------------------------------------------------------------------------

def _taxii(content: dict[str, Any]) -> JSONResponse:
    return JSONResponse(content=content, media_type=TAXII_MEDIA_TYPE)


@router.get("/taxii/discovery")
async def taxii_discovery(
    _ctx: TenantContext = Depends(tenant_context),
) -> JSONResponse:
    return _taxii(format_taxii_discovery())


@router.get("/taxii")
async def taxii_api_root(
    _ctx: TenantContext = Depends(tenant_context),
) -> JSONResponse:
    return _taxii(format_taxii_api_root())


@router.get("/taxii/collections")
async def taxii_collections(
    _ctx: TenantContext = Depends(tenant_context),
) -> JSONResponse:
    return _taxii(format_taxii_collections())


@router.get("/taxii/collections/{collection_id}/objects")
async def taxii_objects(
    collection_id: str,
    limit: int | None = Query(default=None, ge=1),
    next_page: str | None = Query(default=None, alias="next"),
    ctx: TenantContext = Depends(tenant_context),
    engine: Engine = Depends(get_engine),
) -> JSONResponse:
    """STIX objects of the tenant's collection in a TAXII envelope."""
    if collection_id != DEFAULT_COLLECTION_ID:
        raise HTTPException(status_code=404, detail=f"Collection not found: {collection_id}")
    try:
        offset = int(next_page) if next_page else 0
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid 'next' token") from None
    bundle = await engine.exporter.stix_bundle(ctx)
    return _taxii(format_taxii_objects(bundle, limit=limit, offset=offset))
