# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Audit logger that writes to a JSON-lines file and the storage contract."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from tiace.audit.events import AuditEvent, AuditEventType, ResourceType
from tiace.models.tenant import TenantContext
from tiace.storage.base import IndicatorStore

_logger = logging.getLogger("tiace.audit")


class AuditLogger:
    """Records audit events to an optional JSON-lines file and the store.

    The file is best effort: write failures are logged and never reach the
    caller.  The store append is authoritative and its errors propagate, so a
    dedup conflict is never acknowledged without being recorded.
    """

    def __init__(self, store: IndicatorStore, *, log_path: Path | None = None) -> None:
        self._store = store
        self._log_path = log_path
        if self._log_path is not None:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)

    async def log(self, ctx: TenantContext, event: AuditEvent) -> AuditEvent:
        self._write_json_log(event)
        await self._store.append_audit(ctx, event.model_dump(mode="json"))
        _logger.info(
            "audit event=%s type=%s actor=%s resource=%s/%s",
            event.event_id,
            event.event_type,
            event.actor,
            event.resource_type,
            event.resource_id,
            extra={"tenant_id": event.tenant_id},
        )
        return event

    def _write_json_log(self, event: AuditEvent) -> None:
        if self._log_path is None:
            return
        try:
            line = json.dumps(event.model_dump(mode="json"), default=str)
            with self._log_path.open("a") as fh:
                fh.write(line + "\n")
        except OSError:
            _logger.exception("Failed to write JSON audit log")

    async def history(
        self, ctx: TenantContext, *, resource_id: str | None = None, limit: int = 100
    ) -> list[dict[str, Any]]:
        """Most recent events first."""
        return await self._store.list_audit(ctx, resource_id=resource_id, limit=limit)

    # -----------------------------------------------------------------
    # Convenience methods for common event types
    # -----------------------------------------------------------------

    async def log_conflict(
        self,
        ctx: TenantContext,
        indicator_id: str,
        reason: str,
        incoming: dict[str, Any],
        *,
        feed_id: str = "",
    ) -> AuditEvent:
        """Append a rejected incoming record to the existing record's audit trail."""
        return await self.log(
            ctx,
            AuditEvent(
                event_type=AuditEventType.DEDUP_CONFLICT,
                tenant_id=ctx.tenant_id,
                actor=ctx.caller,
                resource_type=ResourceType.INDICATOR,
                resource_id=indicator_id,
                action=f"Conflicting observation rejected: {reason}",
                details={"reason": reason, "feed_id": feed_id, "incoming": incoming},
            ),
        )

    async def log_feed_state(
        self,
        ctx: TenantContext,
        event_type: AuditEventType,
        feed_id: str,
        *,
        details: dict[str, Any] | None = None,
    ) -> AuditEvent:
        return await self.log(
            ctx,
            AuditEvent(
                event_type=event_type,
                tenant_id=ctx.tenant_id,
                actor=ctx.caller,
                resource_type=ResourceType.FEED,
                resource_id=feed_id,
                details=details or {},
            ),
        )

    async def log_deletion(self, ctx: TenantContext, indicator_id: str, *, kind: str, value: str) -> AuditEvent:
        return await self.log(
            ctx,
            AuditEvent(
                event_type=AuditEventType.INDICATOR_DELETED,
                tenant_id=ctx.tenant_id,
                actor=ctx.caller,
                resource_type=ResourceType.INDICATOR,
                resource_id=indicator_id,
                details={"kind": kind, "value": value},
            ),
        )
