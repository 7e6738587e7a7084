# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Feed configuration, sync job and raw record models."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from tiace.core.constants import AuthType, FeedFormat, FeedType, Severity, SyncStatus
from tiace.models.indicator import utcnow


class FeedAuth(BaseModel):
    """Credentials applied per request.

    ``header_name`` is used for API-key auth; OAuth2 uses the client
    credentials grant against ``token_url``; certificate auth presents
    ``cert_file``/``key_file`` as a TLS client certificate.
    """

    model_config = ConfigDict(frozen=True)

    type: AuthType = AuthType.NONE
    api_key: str = ""
    header_name: str = "X-API-Key"
    username: str = ""
    password: str = ""
    token: str = ""
    token_url: str = ""
    client_id: str = ""
    client_secret: str = ""
    scope: str = ""
    cert_file: str = ""
    key_file: str = ""

    def __repr__(self) -> str:
        return f"FeedAuth(type={self.type.value!r})"


class FeedFilters(BaseModel):
    model_config = ConfigDict(frozen=True)

    min_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    severity_levels: frozenset[Severity] = frozenset()
    organizations: frozenset[str] = frozenset()
    tags: frozenset[str] = frozenset()
    start_time: datetime | None = None
    end_time: datetime | None = None


class QualityMetrics(BaseModel):
    """Feed quality signals refreshed after each sync."""

    accuracy: float = 0.0
    timeliness: float = 0.0
    completeness: float = 0.0
    uniqueness: float = 0.0
    false_positive_rate: float = 0.0
    coverage: float = 0.0


class FeedConfiguration(BaseModel):
    """Immutable description of one feed owned by a tenant."""

    model_config = ConfigDict(frozen=True)

    feed_id: str
    tenant_id: str
    name: str = ""
    description: str = ""
    url: str
    feed_type: FeedType
    format: FeedFormat
    auth: FeedAuth = Field(default_factory=FeedAuth)
    interval_minutes: int = Field(default=60, ge=1)
    schedule: str = ""
    filters: FeedFilters = Field(default_factory=FeedFilters)
    quality: QualityMetrics = Field(default_factory=QualityMetrics)
    reliability: float = Field(default=0.5, ge=0.0, le=1.0)
    priority: int = 0
    enabled: bool = True
    headers: dict[str, str] = Field(default_factory=dict)
    page_size: int = Field(default=500, ge=1)
    params: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _default_name(self) -> FeedConfiguration:
        if not self.name:
            object.__setattr__(self, "name", self.feed_id)
        return self


class SyncJob(BaseModel):
    """A tracked execution of one feed sync."""

    job_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    feed_id: str
    tenant_id: str
    status: SyncStatus = SyncStatus.PENDING
    started_at: datetime | None = None
    ended_at: datetime | None = None
    items_imported: int = 0
    items_updated: int = 0
    items_skipped: int = 0
    items_errored: int = 0
    items_conflicted: int = 0
    errors: list[str] = Field(default_factory=list)
    failure_reason: str | None = None
    watermark: str | None = None
    # transport dropped mid-stream after records were already committed
    truncated: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in (SyncStatus.SUCCEEDED, SyncStatus.FAILED, SyncStatus.CANCELLED)

    @property
    def is_failure(self) -> bool:
        return self.status in (SyncStatus.FAILED, SyncStatus.CANCELLED)

    @property
    def is_partial(self) -> bool:
        """Some records landed but not all: per-item errors, or a truncated stream."""
        if self.status is SyncStatus.FAILED:
            return self.truncated
        return self.status is SyncStatus.SUCCEEDED and (self.items_errored > 0 or bool(self.errors))

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()

    def summary(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "feed_id": self.feed_id,
            "status": self.status.value,
            "imported": self.items_imported,
            "updated": self.items_updated,
            "skipped": self.items_skipped,
            "errored": self.items_errored,
            "conflicted": self.items_conflicted,
            "failure_reason": self.failure_reason,
            "truncated": self.truncated,
        }


@dataclass(slots=True)
class RawRecord:
    """An opaque payload pulled from a feed endpoint."""

    feed_id: str
    fetched_at: datetime
    payload: Any
    content_type: str = ""
    watermark: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def now(cls, feed_id: str, payload: Any, **kwargs: Any) -> RawRecord:
        return cls(feed_id=feed_id, fetched_at=utcnow(), payload=payload, **kwargs)
