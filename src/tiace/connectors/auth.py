# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Per-request authentication for feed endpoints.

:func:`client_options` turns a :class:`~tiace.models.feed.FeedAuth` into
keyword arguments for :class:`httpx.AsyncClient`.  OAuth2 client
credentials are handled by :class:`OAuth2ClientCredentials`, an
:class:`httpx.Auth` flow that fetches a token on first use and refreshes
it on expiry or on a 401.
"""

from __future__ import annotations

import ssl
import threading
import time
from collections.abc import Generator
from typing import Any

import httpx

from tiace.core.constants import AuthType
from tiace.core.exceptions import AuthFailedError
from tiace.models.feed import FeedAuth

# Refresh tokens this many seconds before the server says they expire.
_EXPIRY_SKEW = 30.0


class OAuth2ClientCredentials(httpx.Auth):
    """OAuth2 client-credentials grant with a cached access token."""

    requires_response_body = True

    def __init__(self, auth: FeedAuth, *, feed_id: str = "") -> None:
        self._auth = auth
        self._feed_id = feed_id
        self._token: str | None = None
        self._expires_at = 0.0
        self._lock = threading.Lock()

    def _token_request(self) -> httpx.Request:
        data = {
            "grant_type": "client_credentials",
            "client_id": self._auth.client_id,
            "client_secret": self._auth.client_secret,
        }
        if self._auth.scope:
            data["scope"] = self._auth.scope
        return httpx.Request("POST", self._auth.token_url, data=data)

    def _store_token(self, response: httpx.Response) -> None:
        if response.status_code >= 400:
            raise AuthFailedError(
                f"OAuth2 token request failed with HTTP {response.status_code}",
                feed_id=self._feed_id,
            )
        try:
            body = response.json()
            token = body["access_token"]
        except (ValueError, KeyError) as exc:
            raise AuthFailedError("OAuth2 token response has no access_token", feed_id=self._feed_id) from exc
        with self._lock:
            self._token = str(token)
            self._expires_at = time.monotonic() + float(body.get("expires_in", 3600)) - _EXPIRY_SKEW

    def _valid_token(self) -> str | None:
        with self._lock:
            if self._token and time.monotonic() < self._expires_at:
                return self._token
            return None

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        token = self._valid_token()
        if token is None:
            self._store_token((yield self._token_request()))
            token = self._valid_token()
        request.headers["Authorization"] = f"Bearer {token}"
        response = yield request
        if response.status_code == 401:
            # Token revoked server-side; fetch a fresh one once.
            self._store_token((yield self._token_request()))
            request.headers["Authorization"] = f"Bearer {self._valid_token()}"
            yield request


def _require(value: str, what: str, feed_id: str) -> str:
    if not value:
        raise AuthFailedError(f"Feed auth is missing {what}", feed_id=feed_id)
    return value


def client_options(
    auth: FeedAuth,
    *,
    feed_id: str = "",
    oauth: OAuth2ClientCredentials | None = None,
) -> dict[str, Any]:
    """Return ``headers``/``auth``/``verify`` arguments for an :class:`httpx.AsyncClient`."""
    headers: dict[str, str] = {}
    options: dict[str, Any] = {"headers": headers}

    if auth.type is AuthType.API_KEY:
        headers[auth.header_name] = _require(auth.api_key, "api_key", feed_id)
    elif auth.type is AuthType.BASIC:
        options["auth"] = httpx.BasicAuth(_require(auth.username, "username", feed_id), auth.password)
    elif auth.type is AuthType.BEARER:
        headers["Authorization"] = f"Bearer {_require(auth.token, 'token', feed_id)}"
    elif auth.type is AuthType.OAUTH2:
        _require(auth.token_url, "token_url", feed_id)
        _require(auth.client_id, "client_id", feed_id)
        options["auth"] = oauth or OAuth2ClientCredentials(auth, feed_id=feed_id)
    elif auth.type is AuthType.CERTIFICATE:
        context = ssl.create_default_context()
        try:
            context.load_cert_chain(
                _require(auth.cert_file, "cert_file", feed_id),
                auth.key_file or None,
            )
        except (OSError, ssl.SSLError) as exc:
            raise AuthFailedError(f"Cannot load client certificate: {exc}", feed_id=feed_id) from exc
        options["verify"] = context

    return options
