# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Deadline and cancellation helpers shared by the query surface and the scheduler."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from tiace.core.exceptions import DeadlineExceededError

T = TypeVar("T")


async def with_deadline(aw: Awaitable[T], timeout: float | None, *, operation: str = "operation") -> T:
    """Await *aw*, raising :class:`DeadlineExceededError` after *timeout* seconds.

    ``None`` disables the deadline.
    """
    if timeout is None:
        return await aw
    try:
        async with asyncio.timeout(timeout):
            return await aw
    except TimeoutError as exc:
        raise DeadlineExceededError(f"{operation} exceeded its {timeout:.2f}s deadline") from exc


class CancelToken:
    """Cooperative cancellation signal for one sync job.

    The job checks :attr:`cancelled` at record boundaries.  ``reason`` is
    ``"cancelled"`` for an explicit request and ``"timeout"`` when the job
    ran past its deadline.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> str | None:
        await self._event.wait()
        return self.reason
