# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""FastAPI application factory."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tiace import __version__
from tiace.api.middleware import RequestMiddleware
from tiace.api.routes import changes, export, feeds, health, indicators, search
from tiace.core.config import Settings, get_settings
from tiace.core.exceptions import ErrorKind, TiaceError
from tiace.core.logging import setup_logging
from tiace.engine import Engine

logger = logging.getLogger("tiace.api")

_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.PERMISSION_DENIED: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.QUARANTINED: 409,
    ErrorKind.VALIDATION: 422,
    ErrorKind.CONFIGURATION: 422,
    ErrorKind.DEADLINE_EXCEEDED: 504,
    ErrorKind.BACKEND_UNAVAILABLE: 503,
    ErrorKind.RATE_LIMITED: 429,
}


def status_for(exc: TiaceError) -> int:
    return _STATUS_BY_KIND.get(exc.kind, 500)


async def _tiace_error_handler(request: Request, exc: TiaceError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content={"detail": str(exc), "kind": exc.kind.value})


def create_app(
    *,
    settings: Settings | None = None,
    engine: Engine | None = None,
    enable_scheduler: bool = True,
) -> FastAPI:
    """Build the API.

    When *engine* is given the caller owns it and the lifespan neither
    creates nor closes one; otherwise an engine is built from *settings*
    on startup and closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        owned = engine is None
        if owned:
            app_settings = settings or get_settings()
            setup_logging(app_settings.log_level, app_settings.log_format)
            app.state.engine = await Engine.create(app_settings)
            await app.state.engine.start(scheduler=enable_scheduler)
        yield
        if owned:
            await app.state.engine.close()

    app = FastAPI(
        title="tiace",
        description="Threat intelligence aggregation and correlation engine",
        version=__version__,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )
    if engine is not None:
        app.state.engine = engine

    app.add_exception_handler(TiaceError, _tiace_error_handler)

    app.include_router(health.router, prefix="/api/v1", tags=["health"])
    app.include_router(search.router, prefix="/api/v1", tags=["search"])
    app.include_router(indicators.router, prefix="/api/v1", tags=["indicators"])
    app.include_router(feeds.router, prefix="/api/v1", tags=["feeds"])
    app.include_router(changes.router, prefix="/api/v1", tags=["changes"])
    app.include_router(export.router, prefix="/api/v1", tags=["export"])
    app.add_middleware(RequestMiddleware)
    return app


def _create_app_from_env() -> FastAPI:
    """Factory wrapper that reads the TIACE_NO_SCHEDULER env var."""
    import os

    enable_scheduler = os.environ.get("TIACE_NO_SCHEDULER", "") != "1"
    return create_app(enable_scheduler=enable_scheduler)
