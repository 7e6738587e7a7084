# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""TAXII 2.1 collection connector.

``config.url`` points at a collection's ``objects/`` endpoint.  Pages are
requested with ``added_after`` (the watermark) and ``limit`` and followed
through the envelope's ``more``/``next`` fields.  A plain STIX bundle served
from a static URL is accepted as a single page.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

from tiace.connectors.base import Connector
from tiace.core.constants import FeedType
from tiace.core.exceptions import MalformedResponseError
from tiace.models.feed import FeedConfiguration, RawRecord

logger = logging.getLogger(__name__)

TAXII_MEDIA_TYPE = "application/taxii+json;version=2.1"


class TaxiiConnector(Connector):
    feed_type = FeedType.TAXII

    async def fetch(self, config: FeedConfiguration, since: str | None = None) -> AsyncIterator[RawRecord]:
        params: dict[str, Any] = {**config.params, "limit": config.page_size}
        if since:
            params["added_after"] = since
        watermark = since

        async with self._transport.client(config) as client:
            page = 0
            while True:
                response = await self._transport.request(
                    client, config, "GET", config.url, params=params, headers={"Accept": TAXII_MEDIA_TYPE}
                )
                try:
                    envelope = response.json()
                except ValueError as exc:
                    raise MalformedResponseError(
                        f"TAXII response from {config.url} is not JSON", feed_id=config.feed_id
                    ) from exc
                if not isinstance(envelope, dict):
                    raise MalformedResponseError(
                        "TAXII response is not an envelope or bundle", feed_id=config.feed_id
                    )

                watermark = response.headers.get("X-TAXII-Date-Added-Last") or watermark
                page += 1
                yield RawRecord.now(
                    config.feed_id,
                    envelope,
                    content_type=response.headers.get("content-type", TAXII_MEDIA_TYPE),
                    watermark=watermark,
                    metadata={"page": page},
                )

                if envelope.get("type") == "bundle" or not envelope.get("more"):
                    break
                next_token = envelope.get("next")
                if not next_token:
                    logger.warning("TAXII feed %s reported more pages without a next token", config.feed_id)
                    break
                params = {**params, "next": next_token}
