# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Format parsers producing canonical indicators and proto-entities."""

from tiace.parsers.base import ParseResult, coerce_confidence, coerce_severity
from tiace.parsers.extract import extract_indicators, infer_kind
from tiace.parsers.registry import ParserRegistry, default_registry

__all__ = [
    "ParseResult",
    "ParserRegistry",
    "coerce_confidence",
    "coerce_severity",
    "default_registry",
    "extract_indicators",
    "infer_kind",
]
