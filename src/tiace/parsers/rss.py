# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""RSS/ATOM advisory parser built on :mod:`feedparser`.

Each entry's title, summary and content are scanned for indicators; the
entry link is kept as a reference, never emitted as an indicator.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

import feedparser

from tiace.core.exceptions import MalformedRecordError
from tiace.models.feed import FeedConfiguration, RawRecord
from tiace.parsers.base import ParseResult, make_indicator
from tiace.parsers.decode import load_text
from tiace.parsers.extract import extract_indicators

logger = logging.getLogger(__name__)


def _entry_time(entry: Any, *fields: str) -> datetime | None:
    for name in fields:
        parsed = entry.get(name)
        if parsed:
            try:
                return datetime(*parsed[:6], tzinfo=UTC)
            except (TypeError, ValueError):
                continue
    return None


def _entry_text(entry: Any) -> str:
    parts = [entry.get("title", ""), entry.get("summary", "") or entry.get("description", "")]
    for content in entry.get("content") or []:
        parts.append(content.get("value", ""))
    return "\n".join(p for p in parts if p)


def parse_rss(record: RawRecord, config: FeedConfiguration) -> ParseResult:
    feed = feedparser.parse(load_text(record.payload))
    if feed.bozo and not feed.entries:
        raise MalformedRecordError(f"Unreadable RSS/ATOM document: {feed.get('bozo_exception')}")
    if feed.bozo:
        logger.warning(
            "Feed %s has RSS/ATOM parsing errors: %s",
            config.feed_id,
            feed.get("bozo_exception"),
            extra={"feed_id": config.feed_id},
        )

    result = ParseResult()
    for entry in feed.entries:
        published = _entry_time(entry, "published_parsed", "updated_parsed")
        updated = _entry_time(entry, "updated_parsed") or published
        link = entry.get("link", "")
        title = entry.get("title", "")
        tags = {t.get("term", "") for t in entry.get("tags") or [] if t.get("term")}
        for kind, value in extract_indicators(_entry_text(entry)):
            if link and value.rstrip("/") == link.rstrip("/"):
                continue
            indicator = make_indicator(
                config,
                kind,
                value,
                item={"title": title, "link": link},
                first_seen=published,
                last_seen=updated,
                tags=tags,
                description=title,
                references=[link] if link else [],
            )
            result.emit(indicator, config)
    return result
