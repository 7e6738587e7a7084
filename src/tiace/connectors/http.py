# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Shared HTTP transport for feed connectors.

Maps transport failures and HTTP statuses onto the connector error kinds
and retries the retryable ones with exponential backoff inside a sync.
A ``Retry-After`` header on a 429 is honoured as cooperative back-pressure.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from tiace.connectors.auth import OAuth2ClientCredentials, client_options
from tiace.core.config import Settings
from tiace.core.constants import AuthType, FeedFormat
from tiace.core.exceptions import (
    AuthFailedError,
    ConnectorError,
    MalformedResponseError,
    PartialTransportError,
    RateLimitedError,
    UnreachableError,
)
from tiace.models.feed import FeedConfiguration
from tiace.models.indicator import utcnow

logger = logging.getLogger(__name__)

JSON_FORMATS = frozenset(
    {FeedFormat.STIX2, FeedFormat.MISP_JSON, FeedFormat.JSON, FeedFormat.CVE_JSON, FeedFormat.CANONICAL_JSON}
)

# Longest server-requested pause honoured before giving up with RateLimited.
_MAX_RETRY_AFTER = 120.0


def _retry_after(response: httpx.Response) -> float | None:
    header = response.headers.get("retry-after")
    if not header:
        return None
    try:
        return max(0.0, float(header))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(header)
    except (TypeError, ValueError):
        return None
    return max(0.0, (when - utcnow()).total_seconds())


def check_status(response: httpx.Response, feed_id: str) -> None:
    """Raise the connector error matching an unsuccessful HTTP status."""
    status = response.status_code
    if status < 400 or status == 304:
        return
    where = f"{response.request.method} {response.request.url}"
    if status in (401, 403):
        raise AuthFailedError(f"{where} rejected credentials (HTTP {status})", feed_id=feed_id)
    if status == 429:
        raise RateLimitedError(
            f"{where} rate limited", feed_id=feed_id, retry_after=_retry_after(response)
        )
    if status >= 500 or status in (408, 502, 503, 504):
        raise UnreachableError(f"{where} failed with HTTP {status}", feed_id=feed_id)
    raise MalformedResponseError(f"{where} failed with HTTP {status}", feed_id=feed_id)


def decode_body(config: FeedConfiguration, response: httpx.Response) -> Any:
    """JSON formats decode to Python objects, everything else stays text."""
    if config.format in JSON_FORMATS:
        try:
            return response.json()
        except (ValueError, UnicodeDecodeError) as exc:
            raise MalformedResponseError(
                f"Feed {config.feed_id} returned undecodable JSON: {exc}", feed_id=config.feed_id
            ) from exc
    return response.text


def decode_text(config: FeedConfiguration, text: str) -> Any:
    if config.format in JSON_FORMATS:
        try:
            return json.loads(text)
        except ValueError as exc:
            raise MalformedResponseError(
                f"Feed {config.feed_id} contains undecodable JSON: {exc}", feed_id=config.feed_id
            ) from exc
    return text


class HttpTransport:
    """Builds authenticated clients and performs requests with retries."""

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        retries: int = 2,
        backoff: float = 1.0,
        user_agent: str = "tiace/0.1",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._timeout = timeout
        self._retries = retries
        self._backoff = backoff
        self._user_agent = user_agent
        self._sleep = sleep
        self._oauth: dict[str, OAuth2ClientCredentials] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> HttpTransport:
        return cls(
            timeout=settings.request_timeout,
            retries=settings.request_retries,
            backoff=settings.retry_backoff_seconds,
            user_agent=settings.user_agent,
        )

    def client(self, config: FeedConfiguration) -> httpx.AsyncClient:
        oauth = None
        if config.auth.type is AuthType.OAUTH2:
            oauth = self._oauth.get(config.feed_id)
            if oauth is None:
                oauth = OAuth2ClientCredentials(config.auth, feed_id=config.feed_id)
                self._oauth[config.feed_id] = oauth
        options = client_options(config.auth, feed_id=config.feed_id, oauth=oauth)
        headers = {"User-Agent": self._user_agent, **config.headers, **options.pop("headers")}
        return httpx.AsyncClient(
            timeout=self._timeout,
            headers=headers,
            follow_redirects=True,
            **options,
        )

    async def request(
        self,
        client: httpx.AsyncClient,
        config: FeedConfiguration,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> httpx.Response:
        attempt = 0
        while True:
            try:
                response = await self._send(client, config, method, url, **kwargs)
                check_status(response, config.feed_id)
                return response
            except ConnectorError as exc:
                if not exc.retryable or attempt >= self._retries:
                    raise
                delay = self._backoff * (2**attempt)
                if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
                    if exc.retry_after > _MAX_RETRY_AFTER:
                        raise
                    delay = max(delay, exc.retry_after)
                attempt += 1
                logger.warning(
                    "Feed %s: %s (attempt %d/%d, retrying in %.1fs)",
                    config.feed_id,
                    exc,
                    attempt,
                    self._retries,
                    delay,
                    extra={"feed_id": config.feed_id},
                )
                await self._sleep(delay)

    @staticmethod
    async def _send(
        client: httpx.AsyncClient,
        config: FeedConfiguration,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            return await client.request(method, url, **kwargs)
        except (httpx.RemoteProtocolError, httpx.ReadError) as exc:
            raise PartialTransportError(
                f"Connection to {url} dropped mid-response: {exc}", feed_id=config.feed_id
            ) from exc
        except httpx.TransportError as exc:
            raise UnreachableError(f"Cannot reach {url}: {exc}", feed_id=config.feed_id) from exc
