# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Parser for the canonical indicator JSON array produced by the JSON export."""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError as PydanticValidationError

from tiace.core.exceptions import MalformedRecordError, SchemaDriftError
from tiace.models.feed import FeedConfiguration, RawRecord
from tiace.models.indicator import Indicator
from tiace.parsers.base import ParseResult
from tiace.parsers.decode import load_json


def parse_canonical(record: RawRecord, config: FeedConfiguration) -> ParseResult:
    data: Any = load_json(record.payload)
    if isinstance(data, dict):
        data = data.get("indicators", [data] if "kind" in data else None)
    if not isinstance(data, list):
        raise SchemaDriftError("Canonical JSON must be an array of indicators")

    result = ParseResult()
    for item in data:
        if not isinstance(item, dict) or "kind" not in item or "value" not in item:
            result.fail(SchemaDriftError("Canonical indicator lacks 'kind' or 'value'"))
            continue
        try:
            indicator = Indicator.from_canonical(item)
        except (PydanticValidationError, ValueError) as exc:
            result.fail(MalformedRecordError(f"Invalid canonical indicator: {exc}"))
            continue
        # Identity is re-resolved in the importing tenant.
        indicator.indicator_id = ""
        indicator.tenant_id = config.tenant_id
        indicator.source_feeds = {config.feed_id}
        indicator.raw_payloads = {config.feed_id: item}
        result.emit(indicator, config)
    return result
