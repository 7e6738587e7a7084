# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Query-string filters shared by search, hunt and export routes."""

from __future__ import annotations

from datetime import datetime

from fastapi import Query

from tiace.core.constants import Severity
from tiace.models.normalize import canonical_kind
from tiace.query.service import SearchRequest


def search_params(
    q: str = Query(default="", description="Substring over value, description, tags and attribution"),
    kind: list[str] = Query(default=[]),
    severity: list[Severity] = Query(default=[]),
    min_confidence: float = Query(default=0.0, ge=0.0, le=1.0),
    start: datetime | None = None,
    end: datetime | None = None,
    tag: list[str] = Query(default=[]),
    feed: list[str] = Query(default=[]),
    limit: int | None = Query(default=None, ge=1),
) -> SearchRequest:
    return SearchRequest(
        text=q,
        kinds={canonical_kind(k) for k in kind},
        severities=set(severity),
        min_confidence=min_confidence,
        start=start,
        end=end,
        tags=set(tag),
        feeds=set(feed),
        limit=limit,
    )
