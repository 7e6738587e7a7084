# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Per-request correlation id and access logging.

An inbound ``X-Request-ID`` is honoured so a caller's id follows the
request through the log; otherwise one is minted.  The access line carries
the tenant so JSON logs can be filtered per tenant.
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

REQUEST_ID_HEADER = "X-Request-ID"

logger = logging.getLogger("tiace.api.access")


class RequestMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request.state.request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        started = time.perf_counter()

        response = await call_next(request)

        response.headers[REQUEST_ID_HEADER] = request.state.request_id
        elapsed_ms = (time.perf_counter() - started) * 1000
        extra = {"tenant_id": tenant} if (tenant := request.headers.get("X-Tenant-ID")) else None
        logger.info(
            "%s %s -> %d (%.1fms) rid=%s",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
            request.state.request_id,
            extra=extra,
        )
        return response
