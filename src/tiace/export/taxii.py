# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""TAXII 2.1 response formatters for exported threat intelligence.

This module formats STIX bundles and metadata into TAXII 2.1 JSON
response structures.  It is **not** a full TAXII server; it only shapes
responses so the API can serve each tenant's indicators to
TAXII-compatible consumers (SIEMs, TIPs, and other TIACE instances via
the TAXII connector).

See: https://docs.oasis-open.org/cti/taxii/v2.1/taxii-v2.1.html
"""

from __future__ import annotations

from typing import Any

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

TAXII_MEDIA_TYPE = "application/taxii+json;version=2.1"
STIX_MEDIA_TYPE = "application/stix+json;version=2.1"

API_ROOT_URL = "/api/v1/taxii"
DEFAULT_COLLECTION_ID = "tiace-indicators"
_DEFAULT_COLLECTION_TITLE = "TIACE Indicators"


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

def format_taxii_discovery(
    *,
    api_root_url: str = API_ROOT_URL,
    title: str = "TIACE TAXII Server",
    description: str = "TAXII 2.1 interface for tenant-scoped threat intelligence.",
) -> dict[str, Any]:
    """Build a TAXII 2.1 discovery response."""
    return {
        "title": title,
        "description": description,
        "default": api_root_url,
        "api_roots": [api_root_url],
    }


def format_taxii_api_root(
    *,
    title: str = "TIACE Threat Intel API",
    description: str = "API root for correlated indicator collections.",
    max_content_length: int = 10_485_760,
) -> dict[str, Any]:
    return {
        "title": title,
        "description": description,
        "versions": [TAXII_MEDIA_TYPE],
        "max_content_length": max_content_length,
    }


# ---------------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------------

def format_taxii_collections(
    *,
    collection_id: str = DEFAULT_COLLECTION_ID,
    title: str = _DEFAULT_COLLECTION_TITLE,
    description: str = (
        "Deduplicated, enriched and correlated indicators of the calling "
        "tenant, with their actors, campaigns and malware families."
    ),
) -> dict[str, Any]:
    """Build a TAXII 2.1 collections response.

    Each tenant sees a single read-only collection holding its own data.
    """
    return {
        "collections": [
            {
                "id": collection_id,
                "title": title,
                "description": description,
                "can_read": True,
                "can_write": False,
                "media_types": [STIX_MEDIA_TYPE],
            }
        ]
    }


# ---------------------------------------------------------------------------
# Objects (envelope)
# ---------------------------------------------------------------------------

def format_taxii_objects(
    stix_bundle: dict[str, Any],
    *,
    limit: int | None = None,
    offset: int = 0,
) -> dict[str, Any]:
    """Wrap a STIX bundle's objects in a TAXII 2.1 envelope response.

    The envelope returns the individual STIX objects (not the bundle
    wrapper) along with pagination hints.

    Parameters
    ----------
    stix_bundle:
        A STIX 2.1 bundle dict (``{"type": "bundle", "objects": [...]}``)
    limit:
        Maximum number of objects in this page; ``None`` returns all.
    offset:
        Index of the first object of the page.  The ``next`` token of a
        partial page is the offset of the following page.
    """
    objects = stix_bundle.get("objects", [])
    end = len(objects) if limit is None else min(len(objects), offset + limit)
    page = objects[offset:end]

    envelope: dict[str, Any] = {
        "more": end < len(objects),
        "objects": page,
    }
    if envelope["more"]:
        envelope["next"] = str(end)
    return envelope
