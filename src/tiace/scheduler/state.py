# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Per-feed scheduler state and backoff policy."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from tiace.core.constants import FeedState
from tiace.models.feed import FeedConfiguration, SyncJob

# States from which a feed becomes Scheduled once it is due.
WAITING_STATES = frozenset(
    {FeedState.IDLE, FeedState.SUCCEEDED, FeedState.CANCELLED, FeedState.BACKOFF}
)


def backoff_delay(failures: int, *, base: float, ceiling: float) -> timedelta:
    """``min(base * 2**(n-1), ceiling)`` seconds for the n-th consecutive failure."""
    if failures <= 0:
        return timedelta(0)
    return timedelta(seconds=min(base * (2 ** (failures - 1)), ceiling))


@dataclass(slots=True)
class FeedRuntime:
    """Mutable scheduling record for one feed."""

    tenant_id: str
    feed_id: str
    state: FeedState = FeedState.IDLE
    next_due: datetime | None = None
    consecutive_failures: int = 0
    running_job_id: str | None = None
    last_job: SyncJob | None = None
    last_error: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.tenant_id, self.feed_id)

    @property
    def in_flight(self) -> bool:
        return self.running_job_id is not None

    def persisted(self) -> dict[str, Any]:
        """The part of the record that survives a restart."""
        return {
            "state": self.state.value,
            "next_due": self.next_due.isoformat() if self.next_due else None,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
        }

    def restore(self, record: dict[str, Any], now: datetime) -> None:
        state = FeedState(record.get("state", FeedState.IDLE))
        # nothing can still be in flight in a fresh process
        if state in (FeedState.SCHEDULED, FeedState.RUNNING):
            state = FeedState.IDLE
        self.state = state
        due = record.get("next_due")
        self.next_due = datetime.fromisoformat(due) if due else None
        if self.next_due is None and state is not FeedState.QUARANTINED:
            self.next_due = now
        self.consecutive_failures = int(record.get("consecutive_failures", 0))
        self.last_error = record.get("last_error")

    def to_dict(self, config: FeedConfiguration | None = None) -> dict[str, Any]:
        data: dict[str, Any] = {
            "feed_id": self.feed_id,
            "state": self.state.value,
            "next_due": self.next_due.isoformat() if self.next_due else None,
            "consecutive_failures": self.consecutive_failures,
            "running_job_id": self.running_job_id,
            "last_job": self.last_job.summary() if self.last_job else None,
            "last_error": self.last_error,
        }
        if config is not None:
            data.update(
                name=config.name,
                feed_type=config.feed_type.value,
                format=config.format.value,
                enabled=config.enabled,
                priority=config.priority,
                reliability=config.reliability,
                quality=config.quality.model_dump(),
            )
        return data
