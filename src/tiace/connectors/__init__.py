# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Feed connectors: per-feed-type adapters producing raw records."""

from tiace.connectors.base import Connector, ConnectorRegistry, default_registry
from tiace.connectors.http import HttpTransport

__all__ = ["Connector", "ConnectorRegistry", "HttpTransport", "default_registry"]
