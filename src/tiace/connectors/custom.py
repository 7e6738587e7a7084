# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Connector for operator-defined endpoints: one GET, one record."""

from __future__ import annotations

from collections.abc import AsyncIterator

from tiace.connectors.base import Connector
from tiace.connectors.http import decode_body
from tiace.core.constants import FeedType
from tiace.models.feed import FeedConfiguration, RawRecord


class CustomConnector(Connector):
    feed_type = FeedType.CUSTOM

    async def fetch(self, config: FeedConfiguration, since: str | None = None) -> AsyncIterator[RawRecord]:
        params = dict(config.params)
        if since:
            params["since"] = since
        async with self._transport.client(config) as client:
            response = await self._transport.request(client, config, "GET", config.url, params=params or None)
        yield RawRecord.now(
            config.feed_id,
            decode_body(config, response),
            content_type=response.headers.get("content-type", ""),
            watermark=since,
        )
