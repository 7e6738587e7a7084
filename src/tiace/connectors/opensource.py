# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Open-source feed connector (plain text, CSV/TSV, RSS/ATOM, CVE JSON).

Supports ETag-based caching: the response ``ETag`` becomes the watermark and
is sent back as ``If-None-Match``.  A 304 ends the stream with no records.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

from tiace.connectors.base import Connector
from tiace.connectors.http import decode_body
from tiace.core.constants import FeedType
from tiace.models.feed import FeedConfiguration, RawRecord

logger = logging.getLogger(__name__)


class OpenSourceConnector(Connector):
    feed_type = FeedType.OPEN_SOURCE

    async def fetch(self, config: FeedConfiguration, since: str | None = None) -> AsyncIterator[RawRecord]:
        headers = {"If-None-Match": since} if since else {}
        async with self._transport.client(config) as client:
            response = await self._transport.request(
                client, config, "GET", config.url, params=config.params or None, headers=headers
            )

        if response.status_code == 304:
            logger.info("Feed %s returned 304 Not Modified", config.feed_id, extra={"feed_id": config.feed_id})
            return

        yield RawRecord.now(
            config.feed_id,
            decode_body(config, response),
            content_type=response.headers.get("content-type", ""),
            watermark=response.headers.get("etag") or since,
            metadata={"last_modified": response.headers.get("last-modified", "")},
        )
