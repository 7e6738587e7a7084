# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Local file connector for ``file://`` feed URLs.

Used to ingest offline bundles and to re-import exports.  A directory URL
yields one record per regular file, in name order.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from urllib.parse import unquote, urlparse

from tiace.connectors.base import Connector
from tiace.connectors.http import decode_text
from tiace.core.exceptions import UnreachableError
from tiace.models.feed import FeedConfiguration, RawRecord


def path_from_url(url: str) -> Path:
    parsed = urlparse(url)
    return Path(unquote(parsed.netloc + parsed.path) if parsed.netloc else unquote(parsed.path))


class LocalFileConnector(Connector):
    async def fetch(self, config: FeedConfiguration, since: str | None = None) -> AsyncIterator[RawRecord]:
        root = path_from_url(config.url)
        if root.is_dir():
            paths = sorted(p for p in root.iterdir() if p.is_file())
        elif root.is_file():
            paths = [root]
        else:
            raise UnreachableError(f"No such file: {root}", feed_id=config.feed_id)

        for path in paths:
            try:
                text = await asyncio.to_thread(path.read_text, encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                raise UnreachableError(f"Cannot read {path}: {exc}", feed_id=config.feed_id) from exc
            yield RawRecord.now(
                config.feed_id,
                decode_text(config, text),
                content_type="text/plain",
                watermark=since,
                metadata={"path": str(path)},
            )
