# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Commercial vendor JSON connector.

Vendors differ mostly in where they put the item list and the next-page
pointer.  Items are looked for under ``data``, ``indicators``, ``results``
or ``items`` (or the body itself when it is a list); the next page comes
from a ``next`` field or an RFC 8288 ``Link: rel="next"`` header.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from tiace.connectors.base import Connector
from tiace.connectors.http import decode_body
from tiace.core.constants import FeedType
from tiace.core.exceptions import MalformedResponseError
from tiace.models.feed import FeedConfiguration, RawRecord

_ITEM_KEYS = ("data", "indicators", "results", "items")


def _page_items(body: Any) -> list[Any]:
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        for key in _ITEM_KEYS:
            items = body.get(key)
            if isinstance(items, list):
                return items
    raise ValueError("no item list in vendor response")


class CommercialConnector(Connector):
    feed_type = FeedType.COMMERCIAL

    async def fetch(self, config: FeedConfiguration, since: str | None = None) -> AsyncIterator[RawRecord]:
        params: dict[str, Any] | None = {**config.params, "limit": config.page_size}
        if since:
            params["since"] = since
        url: str | None = config.url
        watermark = since

        async with self._transport.client(config) as client:
            while url:
                response = await self._transport.request(client, config, "GET", url, params=params)
                body = decode_body(config, response)
                if not isinstance(body, (list, dict)):
                    # Vendor serves CSV or text; hand it to the parser unpaged.
                    yield RawRecord.now(
                        config.feed_id, body, content_type=response.headers.get("content-type", ""), watermark=watermark
                    )
                    return
                try:
                    items = _page_items(body)
                except ValueError as exc:
                    raise MalformedResponseError(f"{url}: {exc}", feed_id=config.feed_id) from exc

                if isinstance(body, dict):
                    cursor = body.get("watermark") or body.get("cursor")
                    watermark = str(cursor) if cursor else watermark
                yield RawRecord.now(
                    config.feed_id,
                    items,
                    content_type=response.headers.get("content-type", "application/json"),
                    watermark=watermark,
                )

                next_url = body.get("next") if isinstance(body, dict) else None
                if not next_url:
                    next_url = response.links.get("next", {}).get("url")
                if not items or not next_url:
                    break
                # The next link already carries the query string.
                url, params = str(next_url), None
