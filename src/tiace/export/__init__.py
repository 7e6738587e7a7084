# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""STIX, TAXII, MISP, JSON, CSV and YARA export of tenant indicators."""

from tiace.export.exporter import ExportResult, Exporter
from tiace.export.flat import render_csv, render_json, render_yara
from tiace.export.misp import build_misp_event
from tiace.export.stix import build_stix_bundle, indicator_to_stix
from tiace.export.taxii import (
    TAXII_MEDIA_TYPE,
    format_taxii_api_root,
    format_taxii_collections,
    format_taxii_discovery,
    format_taxii_objects,
)

__all__ = [
    "TAXII_MEDIA_TYPE",
    "ExportResult",
    "Exporter",
    "build_misp_event",
    "build_stix_bundle",
    "format_taxii_api_root",
    "format_taxii_collections",
    "format_taxii_discovery",
    "format_taxii_objects",
    "indicator_to_stix",
    "render_csv",
    "render_json",
    "render_yara",
]
