# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Payload decoding shared by the JSON-based parsers."""

from __future__ import annotations

import json
from typing import Any

from tiace.core.exceptions import MalformedRecordError


def load_json(payload: Any) -> Any:
    """Return *payload* decoded from JSON text, or unchanged if already decoded."""
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8", errors="replace")
    if isinstance(payload, str):
        try:
            return json.loads(payload)
        except ValueError as exc:
            raise MalformedRecordError(f"Record is not valid JSON: {exc}") from exc
    return payload


def load_text(payload: Any) -> str:
    if isinstance(payload, bytes):
        return payload.decode("utf-8", errors="replace")
    if isinstance(payload, str):
        return payload
    raise MalformedRecordError(f"Expected a text record, got {type(payload).__name__}")
