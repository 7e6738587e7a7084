# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Tenant-scoped export of indicators in every supported format.

Indicators are selected with the same :class:`SearchCriteria` as search
and ordered by ``(kind, value)``; no renderer reads the clock, so two
exports of an unchanged snapshot are byte-identical.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from tiace.core.constants import EntityType, ExportFormat, Permission
from tiace.core.deadlines import with_deadline
from tiace.core.exceptions import ValidationError
from tiace.export.flat import render_csv, render_json, render_yara, yara_rule
from tiace.export.misp import build_misp_event
from tiace.export.stix import build_stix_bundle
from tiace.models.entities import Campaign, ThreatActor
from tiace.models.indicator import Indicator
from tiace.models.tenant import TenantContext
from tiace.storage.base import IndicatorStore, SearchCriteria

logger = logging.getLogger("tiace.export")

MEDIA_TYPES: dict[ExportFormat, str] = {
    ExportFormat.STIX: "application/stix+json;version=2.1",
    ExportFormat.MISP: "application/json",
    ExportFormat.JSON: "application/json",
    ExportFormat.CSV: "text/csv",
    ExportFormat.YARA: "text/plain",
}

FILE_EXTENSIONS: dict[ExportFormat, str] = {
    ExportFormat.STIX: "json",
    ExportFormat.MISP: "json",
    ExportFormat.JSON: "json",
    ExportFormat.CSV: "csv",
    ExportFormat.YARA: "yar",
}


@dataclass(slots=True)
class ExportResult:
    format: ExportFormat
    content: str
    count: int

    @property
    def media_type(self) -> str:
        return MEDIA_TYPES[self.format]

    @property
    def filename(self) -> str:
        return f"tiace-export.{FILE_EXTENSIONS[self.format]}"


def _dumps(document: dict[str, Any]) -> str:
    return json.dumps(document, indent=2, sort_keys=True, ensure_ascii=False) + "\n"


class Exporter:
    def __init__(self, store: IndicatorStore, *, timeout: float | None = None) -> None:
        self._store = store
        self._timeout = timeout

    async def select(self, ctx: TenantContext, criteria: SearchCriteria | None = None) -> list[Indicator]:
        """Indicators matching *criteria*, ordered by ``(kind, value)``."""
        indicators = await self._store.search(ctx, criteria or SearchCriteria())
        return sorted(indicators, key=lambda i: (i.kind, i.value))

    async def stix_bundle(self, ctx: TenantContext, criteria: SearchCriteria | None = None) -> dict[str, Any]:
        ctx.require(Permission.EXPORT)
        indicators = await self.select(ctx, criteria)
        ids = {i.indicator_id for i in indicators}
        actors: dict[str, ThreatActor] = {}
        for entity in await self._store.list_entities(ctx, EntityType.THREAT_ACTOR):
            if isinstance(entity, ThreatActor):
                for name in entity.all_names():
                    actors.setdefault(name, entity)
        campaigns: dict[str, Campaign] = {}
        for entity in await self._store.list_entities(ctx, EntityType.CAMPAIGN):
            if isinstance(entity, Campaign):
                campaigns.setdefault(entity.name.strip().lower(), entity)
        edges = sorted(
            (e for e in await self._store.all_edges(ctx) if e.source_id in ids and e.target_id in ids),
            key=lambda e: e.key,
        )
        return build_stix_bundle(indicators, actors=actors, campaigns=campaigns, relationships=edges)

    async def export(
        self,
        ctx: TenantContext,
        fmt: ExportFormat | str,
        criteria: SearchCriteria | None = None,
    ) -> ExportResult:
        """Render the tenant's matching indicators in *fmt*.

        Raises
        ------
        PermissionDeniedError
            When the caller lacks ``export`` permission.
        ValidationError
            When *fmt* names no supported format.
        DeadlineExceededError
            When rendering runs past the configured timeout.
        """
        ctx.require(Permission.EXPORT)
        try:
            fmt = ExportFormat(str(fmt).strip().lower())
        except ValueError as exc:
            raise ValidationError(f"Unsupported export format: {fmt!r}") from exc
        result = await with_deadline(self._render(ctx, fmt, criteria), self._timeout, operation="export")
        logger.info(
            "Exported %d indicators as %s", result.count, fmt.value, extra={"tenant_id": ctx.tenant_id}
        )
        return result

    async def _render(
        self, ctx: TenantContext, fmt: ExportFormat, criteria: SearchCriteria | None
    ) -> ExportResult:
        if fmt is ExportFormat.STIX:
            bundle = await self.stix_bundle(ctx, criteria)
            count = sum(1 for o in bundle["objects"] if o["type"] == "indicator")
            return ExportResult(fmt, _dumps(bundle), count)

        indicators = await self.select(ctx, criteria)
        if fmt is ExportFormat.MISP:
            content = _dumps(build_misp_event(ctx.tenant_id, indicators))
        elif fmt is ExportFormat.JSON:
            content = render_json(indicators)
        elif fmt is ExportFormat.CSV:
            content = render_csv(indicators)
        else:
            content = render_yara(indicators)
            indicators = [i for i in indicators if yara_rule(i) is not None]
        return ExportResult(fmt, content, len(indicators))
