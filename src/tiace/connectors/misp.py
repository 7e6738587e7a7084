# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""MISP connector using the ``events/restSearch`` API.

Each MISP event becomes one raw record.  The watermark is the highest event
``timestamp`` seen, passed back as the ``timestamp`` filter on the next sync.
Tag and organisation filters from the feed configuration are pushed down to
the server.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from tiace.connectors.base import Connector
from tiace.core.constants import FeedType
from tiace.core.exceptions import MalformedResponseError
from tiace.models.feed import FeedConfiguration, RawRecord


def _search_url(base: str) -> str:
    if "restSearch" in base:
        return base
    return base.rstrip("/") + "/events/restSearch"


def _events(body: Any) -> list[dict[str, Any]]:
    items = body.get("response", []) if isinstance(body, dict) else body
    if not isinstance(items, list):
        raise ValueError("restSearch response is not a list")
    events = []
    for item in items:
        event = item.get("Event", item) if isinstance(item, dict) else None
        if isinstance(event, dict):
            events.append(event)
    return events


class MispConnector(Connector):
    feed_type = FeedType.MISP

    async def fetch(self, config: FeedConfiguration, since: str | None = None) -> AsyncIterator[RawRecord]:
        query: dict[str, Any] = {
            "returnFormat": "json",
            "limit": config.page_size,
            "includeEventTags": True,
            **config.params,
        }
        if since:
            query["timestamp"] = since
        if config.filters.tags:
            query["tags"] = sorted(config.filters.tags)
        if config.filters.organizations:
            query["org"] = sorted(config.filters.organizations)

        url = _search_url(config.url)
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        watermark = int(since) if since and since.isdigit() else 0

        async with self._transport.client(config) as client:
            page = 1
            while True:
                response = await self._transport.request(
                    client, config, "POST", url, json={**query, "page": page}, headers=headers
                )
                try:
                    events = _events(response.json())
                except ValueError as exc:
                    raise MalformedResponseError(
                        f"MISP response from {url} is not a restSearch result: {exc}", feed_id=config.feed_id
                    ) from exc

                for event in events:
                    stamp = str(event.get("timestamp", ""))
                    if stamp.isdigit():
                        watermark = max(watermark, int(stamp))
                    yield RawRecord.now(
                        config.feed_id,
                        {"Event": event},
                        content_type="application/json",
                        watermark=str(watermark) if watermark else since,
                        metadata={"page": page, "event_uuid": event.get("uuid", "")},
                    )

                if len(events) < config.page_size:
                    break
                page += 1
