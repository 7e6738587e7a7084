# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Feed inclusion filters applied by parsers before emission."""

from __future__ import annotations

from tiace.models.feed import FeedFilters
from tiace.models.indicator import Indicator


def passes_filters(indicator: Indicator, filters: FeedFilters, *, organization: str | None = None) -> bool:
    if indicator.confidence < filters.min_confidence:
        return False
    if filters.severity_levels and indicator.severity not in filters.severity_levels:
        return False
    if filters.tags and not ({t.lower() for t in filters.tags} & indicator.tags):
        return False
    if filters.organizations:
        org = (organization or indicator.context.organization or "").strip().lower()
        if org not in {o.strip().lower() for o in filters.organizations}:
            return False
    if filters.start_time is not None and indicator.last_seen < filters.start_time:
        return False
    if filters.end_time is not None and indicator.first_seen > filters.end_time:
        return False
    return True
