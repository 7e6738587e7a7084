# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Health check and metrics endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from tiace import __version__
from tiace.api.auth import get_engine
from tiace.engine import Engine

router = APIRouter()


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str


class ReadyResponse(BaseModel):
    status: str
    storage: dict[str, Any]
    in_flight_syncs: int
    scheduler_running: bool


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(status="ok", service="tiace", version=__version__)


@router.get("/ready", response_model=ReadyResponse)
async def ready(engine: Engine = Depends(get_engine)) -> ReadyResponse:
    storage = await engine.store.health_check()
    return ReadyResponse(
        status="ready" if storage.healthy else "not_ready",
        storage=storage.to_dict(),
        in_flight_syncs=engine.scheduler.in_flight,
        scheduler_running=engine.scheduler.running,
    )


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
