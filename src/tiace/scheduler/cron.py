# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Cron schedules for feeds that sync on a calendar instead of an interval.

Supports standard 5-field expressions::

    minute hour day month weekday

Each field accepts ``*``, ``N``, ``N,M``, ``N-M``, ``*/N`` and ``N-M/S``.
As in classic cron, when both day-of-month and day-of-week are restricted
a time matches if *either* does.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from tiace.core.exceptions import ConfigurationError

# Cron weekday (0=Sun) to Python weekday (0=Mon).
_CRON_TO_PY_WEEKDAY = {0: 6, 1: 0, 2: 1, 3: 2, 4: 3, 5: 4, 6: 5, 7: 6}

_SEARCH_LIMIT = timedelta(days=366)


class CronParseError(ConfigurationError):
    """Raised when a cron expression is invalid."""


def _parse_field(field: str, min_val: int, max_val: int) -> frozenset[int]:
    values: set[int] = set()
    for part in field.split(","):
        part = part.strip()
        base, _, step_text = part.partition("/")
        step = 1
        if step_text:
            try:
                step = int(step_text)
            except ValueError as exc:
                raise CronParseError(f"Invalid step value: {part}") from exc
            if step <= 0:
                raise CronParseError(f"Step must be positive: {part}")

        if base == "*":
            lo, hi = min_val, max_val
        elif "-" in base:
            try:
                lo_text, hi_text = base.split("-", 1)
                lo, hi = int(lo_text), int(hi_text)
            except ValueError as exc:
                raise CronParseError(f"Invalid range: {part}") from exc
        else:
            try:
                lo = int(base)
            except ValueError as exc:
                raise CronParseError(f"Invalid value: {part}") from exc
            hi = max_val if step_text else lo

        if lo < min_val or hi > max_val or lo > hi:
            raise CronParseError(f"{part!r} out of bounds ({min_val}-{max_val})")
        values.update(range(lo, hi + 1, step))
    return frozenset(values)


@dataclass(frozen=True, slots=True)
class CronSchedule:
    expression: str
    minutes: frozenset[int]
    hours: frozenset[int]
    days: frozenset[int]
    months: frozenset[int]
    weekdays: frozenset[int]  # Python numbering, 0=Mon
    day_restricted: bool
    weekday_restricted: bool

    @classmethod
    def parse(cls, expression: str) -> CronSchedule:
        parts = expression.strip().split()
        if len(parts) != 5:
            raise CronParseError(
                f"Cron expression must have exactly 5 fields, got {len(parts)}: {expression!r}"
            )
        cron_weekdays = _parse_field(parts[4], 0, 7)
        return cls(
            expression=expression.strip(),
            minutes=_parse_field(parts[0], 0, 59),
            hours=_parse_field(parts[1], 0, 23),
            days=_parse_field(parts[2], 1, 31),
            months=_parse_field(parts[3], 1, 12),
            weekdays=frozenset(_CRON_TO_PY_WEEKDAY[d] for d in cron_weekdays),
            day_restricted=parts[2] != "*",
            weekday_restricted=parts[4] != "*",
        )

    def _day_matches(self, candidate: datetime) -> bool:
        in_days = candidate.day in self.days
        in_weekdays = candidate.weekday() in self.weekdays
        if self.day_restricted and self.weekday_restricted:
            return in_days or in_weekdays
        return in_days and in_weekdays

    def next_after(self, after: datetime) -> datetime:
        """Return the first matching minute strictly after *after*."""
        candidate = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
        limit = candidate + _SEARCH_LIMIT
        while candidate < limit:
            if candidate.month not in self.months or not self._day_matches(candidate):
                candidate = (candidate + timedelta(days=1)).replace(hour=0, minute=0)
                continue
            if candidate.hour not in self.hours:
                candidate = (candidate + timedelta(hours=1)).replace(minute=0)
                continue
            if candidate.minute in self.minutes:
                return candidate
            candidate += timedelta(minutes=1)
        raise CronParseError(f"Cron expression never fires: {self.expression!r}")


def next_due_from_cron(expression: str, after: datetime) -> datetime:
    return CronSchedule.parse(expression).next_after(after)
