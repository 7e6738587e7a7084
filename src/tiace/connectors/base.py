# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Connector contract and the feed-type registry.

A connector turns a :class:`~tiace.models.feed.FeedConfiguration` and an
optional high-watermark into a lazy, finite stream of
:class:`~tiace.models.feed.RawRecord`.  When the transport fails the
stream stops and the typed :class:`~tiace.core.exceptions.ConnectorError`
is raised to the consumer, which keeps every record already received.
"""

from __future__ import annotations

import abc
import logging
from collections.abc import AsyncIterator

from tiace.connectors.http import HttpTransport
from tiace.core.constants import FeedType
from tiace.core.exceptions import ConfigurationError
from tiace.models.feed import FeedConfiguration, RawRecord

logger = logging.getLogger(__name__)


class Connector(abc.ABC):
    """Pulls raw records for one feed type."""

    feed_type: FeedType | None = None

    def __init__(self, transport: HttpTransport | None = None) -> None:
        self._transport = transport or HttpTransport()

    @abc.abstractmethod
    def fetch(self, config: FeedConfiguration, since: str | None = None) -> AsyncIterator[RawRecord]:
        """Yield raw records newer than *since*.  Not restartable."""


class ConnectorRegistry:
    """Dispatch table from feed type (or URL scheme) to connector."""

    def __init__(self) -> None:
        self._by_type: dict[FeedType, Connector] = {}
        self._by_scheme: dict[str, Connector] = {}

    def register(self, connector: Connector, *, feed_type: FeedType | None = None) -> None:
        key = feed_type or connector.feed_type
        if key is None:
            raise ConfigurationError(f"{type(connector).__name__} does not declare a feed type")
        self._by_type[key] = connector

    def register_scheme(self, scheme: str, connector: Connector) -> None:
        self._by_scheme[scheme.lower()] = connector

    def for_feed(self, config: FeedConfiguration) -> Connector:
        scheme = config.url.partition("://")[0].lower() if "://" in config.url else ""
        if scheme in self._by_scheme:
            return self._by_scheme[scheme]
        try:
            return self._by_type[config.feed_type]
        except KeyError:
            raise ConfigurationError(
                f"No connector registered for feed type {config.feed_type.value!r}"
            ) from None

    @property
    def feed_types(self) -> list[FeedType]:
        return sorted(self._by_type)


def default_registry(transport: HttpTransport | None = None) -> ConnectorRegistry:
    """Registry with every built-in connector, sharing one transport."""
    from tiace.connectors.commercial import CommercialConnector
    from tiace.connectors.custom import CustomConnector
    from tiace.connectors.file import LocalFileConnector
    from tiace.connectors.misp import MispConnector
    from tiace.connectors.opensource import OpenSourceConnector
    from tiace.connectors.taxii import TaxiiConnector

    transport = transport or HttpTransport()
    registry = ConnectorRegistry()
    for cls in (MispConnector, TaxiiConnector, CommercialConnector, OpenSourceConnector, CustomConnector):
        registry.register(cls(transport))
    registry.register_scheme("file", LocalFileConnector(transport))
    return registry
