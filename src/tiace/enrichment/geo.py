# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Static network context table loaded from YAML.

File shape::

    networks:
      - cidr: 203.0.113.0/24
        country: NL
        city: Amsterdam
        asn: AS64500
        organization: Example Hosting
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from tiace.core.constants import IndicatorKind
from tiace.core.exceptions import ConfigurationError
from tiace.models.normalize import normalize

logger = logging.getLogger(__name__)

Network = ipaddress.IPv4Network | ipaddress.IPv6Network


@dataclass(frozen=True, slots=True)
class GeoEntry:
    network: Network
    country: str | None = None
    city: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    asn: str | None = None
    organization: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cidr": self.network.compressed,
            "country": self.country,
            "city": self.city,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "asn": self.asn,
            "organization": self.organization,
        }


class GeoTable:
    """Longest-prefix lookup over configured networks."""

    def __init__(self, entries: list[GeoEntry] | None = None) -> None:
        # Most specific first so the first containing network wins.
        self._entries = sorted(entries or [], key=lambda e: e.network.prefixlen, reverse=True)

    def __len__(self) -> int:
        return len(self._entries)

    @classmethod
    def load(cls, path: str | Path) -> GeoTable:
        try:
            data = yaml.safe_load(Path(path).read_text()) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigurationError(f"Cannot load geo table {path}: {exc}") from exc
        entries: list[GeoEntry] = []
        for raw in data.get("networks") or []:
            try:
                network = ipaddress.ip_network(str(raw["cidr"]), strict=False)
            except (KeyError, ValueError) as exc:
                raise ConfigurationError(f"Invalid geo table entry {raw!r}: {exc}") from exc
            asn = raw.get("asn")
            entries.append(
                GeoEntry(
                    network=network,
                    country=raw.get("country"),
                    city=raw.get("city"),
                    latitude=raw.get("latitude"),
                    longitude=raw.get("longitude"),
                    asn=normalize(IndicatorKind.ASN, str(asn)) if asn is not None else None,
                    organization=raw.get("organization"),
                )
            )
        logger.info("Loaded %d geo table entries from %s", len(entries), path)
        return cls(entries)

    def lookup(self, value: str) -> GeoEntry | None:
        """Resolve an address or network to its most specific containing entry."""
        try:
            target = ipaddress.ip_network(value, strict=False)
        except ValueError:
            return None
        for entry in self._entries:
            if entry.network.version == target.version and target.subnet_of(entry.network):
                return entry
        return None
