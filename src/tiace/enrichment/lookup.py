# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Context lookup: geo/ASN/organization for addresses, port/protocol for URLs."""

from __future__ import annotations

import ipaddress
import logging
from urllib.parse import urlsplit

from tiace.cache.manager import CacheManager
from tiace.core.constants import IndicatorKind
from tiace.enrichment.base import EnrichmentStage
from tiace.enrichment.context import EnrichmentContext
from tiace.enrichment.geo import GeoTable
from tiace.models.indicator import GeoInfo, Indicator

logger = logging.getLogger(__name__)

CACHE_NAMESPACE = "geo"

DEFAULT_PORTS = {"http": 80, "https": 443, "ftp": 21, "ws": 80, "wss": 443}


def url_host(value: str) -> str | None:
    try:
        return urlsplit(value).hostname
    except ValueError:
        return None


def url_port(value: str) -> tuple[str, int | None]:
    """Return ``(scheme, port)``; the port falls back to the scheme default."""
    try:
        parts = urlsplit(value)
        port = parts.port
    except ValueError:
        return "", None
    scheme = parts.scheme.lower()
    return scheme, port if port is not None else DEFAULT_PORTS.get(scheme)


class ContextStage(EnrichmentStage):
    def __init__(self, geo: GeoTable, *, cache: CacheManager | None = None) -> None:
        self._geo = geo
        self._cache = cache

    @property
    def stage_name(self) -> str:
        return "context"

    @property
    def order(self) -> int:
        return 20

    async def enrich(self, context: EnrichmentContext) -> str:
        indicator = context.indicator
        if indicator.kind == IndicatorKind.URL:
            scheme, port = url_port(indicator.value)
            if scheme and scheme not in indicator.context.protocols:
                indicator.context.protocols = sorted({*indicator.context.protocols, scheme})
            if port is not None and port not in indicator.context.ports:
                indicator.context.ports = sorted({*indicator.context.ports, port})
            host = url_host(indicator.value)
            if host and _is_address(host):
                await self._resolve(context, host)
            return "url"
        if indicator.kind in (IndicatorKind.IP, IndicatorKind.CIDR):
            return "resolved" if await self._resolve(context, indicator.value) else "unknown"
        return "skipped"

    async def _resolve(self, context: EnrichmentContext, address: str) -> bool:
        tenant_id = context.tenant.tenant_id
        found = None
        if self._cache is not None:
            found = await self._cache.get_json(CACHE_NAMESPACE, tenant_id, address)
        if found is None:
            entry = self._geo.lookup(address)
            found = entry.to_dict() if entry is not None else {}
            if self._cache is not None:
                await self._cache.set_json(CACHE_NAMESPACE, tenant_id, address, found)
        if not found:
            return False
        _apply(context.indicator, found)
        return True


def _is_address(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def _apply(indicator: Indicator, found: dict[str, object]) -> None:
    ctx = indicator.context
    if ctx.geo is None and (found.get("country") or found.get("city")):
        ctx.geo = GeoInfo(
            country=found.get("country"),
            city=found.get("city"),
            latitude=found.get("latitude"),
            longitude=found.get("longitude"),
        )
    if ctx.asn is None and found.get("asn"):
        ctx.asn = str(found["asn"])
    if ctx.organization is None and found.get("organization"):
        ctx.organization = str(found["organization"])
