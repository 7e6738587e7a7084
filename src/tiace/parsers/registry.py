# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""``(feed_type, format) -> parser`` dispatch.

Registrations made with ``feed_type=None`` apply to every feed type and are
used when no exact registration exists.
"""

from __future__ import annotations

import logging

from tiace.core.constants import FeedFormat, FeedType
from tiace.core.exceptions import ConfigurationError
from tiace.models.feed import FeedConfiguration, RawRecord
from tiace.parsers.base import Parser, ParseResult

logger = logging.getLogger(__name__)


class ParserRegistry:
    def __init__(self) -> None:
        self._parsers: dict[tuple[FeedType | None, FeedFormat], Parser] = {}

    def register(self, fmt: FeedFormat, parser: Parser, *, feed_type: FeedType | None = None) -> None:
        key = (feed_type, fmt)
        if key in self._parsers:
            logger.debug("Replacing parser for %s/%s", feed_type or "*", fmt.value)
        self._parsers[key] = parser

    def get(self, feed_type: FeedType, fmt: FeedFormat) -> Parser:
        parser = self._parsers.get((feed_type, fmt)) or self._parsers.get((None, fmt))
        if parser is None:
            raise ConfigurationError(f"No parser registered for {feed_type.value}/{fmt.value}")
        return parser

    def supports(self, feed_type: FeedType, fmt: FeedFormat) -> bool:
        return (feed_type, fmt) in self._parsers or (None, fmt) in self._parsers

    def parse(self, record: RawRecord, config: FeedConfiguration) -> ParseResult:
        return self.get(config.feed_type, config.format)(record, config)


def default_registry() -> ParserRegistry:
    from tiace.parsers.canonical import parse_canonical
    from tiace.parsers.cve import parse_cve
    from tiace.parsers.misp import parse_misp
    from tiace.parsers.osint import parse_csv, parse_text, parse_tsv
    from tiace.parsers.rss import parse_rss
    from tiace.parsers.stix import parse_stix
    from tiace.parsers.vendor import parse_vendor_json

    registry = ParserRegistry()
    registry.register(FeedFormat.STIX2, parse_stix)
    registry.register(FeedFormat.MISP_JSON, parse_misp)
    registry.register(FeedFormat.JSON, parse_vendor_json)
    registry.register(FeedFormat.CSV, parse_csv)
    registry.register(FeedFormat.TSV, parse_tsv)
    registry.register(FeedFormat.TXT, parse_text)
    registry.register(FeedFormat.CVE_JSON, parse_cve)
    registry.register(FeedFormat.RSS, parse_rss)
    registry.register(FeedFormat.ATOM, parse_rss)
    registry.register(FeedFormat.CANONICAL_JSON, parse_canonical)
    return registry
