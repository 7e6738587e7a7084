# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Audit event model.

Events are tenant-owned and keyed by the resource they concern, so the
trail of one indicator or one feed can be read back with
``AuditLogger.history(resource_id=...)``.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class AuditEventType(StrEnum):
    DEDUP_CONFLICT = "dedup_conflict"
    FEED_QUARANTINED = "feed_quarantined"
    FEED_REENABLED = "feed_reenabled"
    FEED_CHANGED = "feed_changed"
    INDICATOR_DELETED = "indicator_deleted"
    SYNC_CANCELLED = "sync_cancelled"


class ResourceType(StrEnum):
    INDICATOR = "indicator"
    FEED = "feed"


_ACTIONS: dict[AuditEventType, str] = {
    AuditEventType.DEDUP_CONFLICT: "Conflicting observation rejected",
    AuditEventType.FEED_QUARANTINED: "Feed quarantined",
    AuditEventType.FEED_REENABLED: "Feed re-enabled",
    AuditEventType.FEED_CHANGED: "Feed configuration changed",
    AuditEventType.INDICATOR_DELETED: "Indicator deleted",
    AuditEventType.SYNC_CANCELLED: "Sync cancelled",
}


class AuditEvent(BaseModel):
    event_type: AuditEventType
    tenant_id: str
    resource_type: ResourceType
    resource_id: str
    # tenant context caller; "system" for scheduler-initiated changes
    actor: str = "system"
    action: str = ""
    details: dict[str, Any] = Field(default_factory=dict)
    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def model_post_init(self, __context: Any) -> None:
        if not self.action:
            self.action = _ACTIONS[self.event_type]
