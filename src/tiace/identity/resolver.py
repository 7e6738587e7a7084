# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Content-addressed dedup and identity resolution.

The resolver owns the tenant-scoped map ``fingerprint -> indicator_id``.
Committed identities live in the store's unique fingerprint index; records
created by a running sync job are held here as *pending* entries until the
job's next ``bulk_store`` commits them.  Every decision for a fingerprint is
taken under one of ``stripes`` locks, so concurrent upserts of the same
fingerprint linearize while unrelated fingerprints proceed in parallel.

Pending entries keep every contribution that was folded into them.  When a
job rolls back, its contributions are removed and the entry is rebuilt from
what other callers observed; an entry nobody else touched is dropped.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import timedelta
from enum import StrEnum

from tiace.audit.logger import AuditLogger
from tiace.core.config import Settings
from tiace.core.constants import Permission
from tiace.identity.merge import conflict_reason, merge_observation
from tiace.models.indicator import Indicator
from tiace.models.tenant import TenantContext
from tiace.storage.base import IndicatorStore

logger = logging.getLogger(__name__)

_Key = tuple[str, bytes]


class DecisionKind(StrEnum):
    CREATED = "created"
    CORROBORATED = "corroborated"
    CONFLICTED = "conflicted"


@dataclass(frozen=True, slots=True)
class Decision:
    """Outcome of one upsert.

    ``indicator`` is the resolved record: the new record for ``CREATED``, the
    merged record for ``CORROBORATED`` and the preserved record for
    ``CONFLICTED``.  ``pending`` is true while the record awaits a job's
    ``bulk_store``.
    """

    kind: DecisionKind
    indicator_id: str
    indicator: Indicator
    reason: str = ""
    changed: bool = False
    pending: bool = False


@dataclass(slots=True)
class _Contribution:
    owner: str | None
    observation: Indicator
    reliability: float


@dataclass(slots=True)
class _Pending:
    key: _Key
    indicator_id: str
    owner: str
    merged: Indicator
    contributions: list[_Contribution] = field(default_factory=list)
    revision: int = 0


@dataclass(frozen=True, slots=True)
class Claim:
    """A pending record handed to ``bulk_store`` at a known revision."""

    key: _Key
    revision: int
    indicator: Indicator


class IdentityResolver:
    def __init__(
        self,
        store: IndicatorStore,
        *,
        audit: AuditLogger | None = None,
        trusted_reliability: float = 0.8,
        reputable_reliability: float = 0.5,
        first_seen_tolerance: timedelta = timedelta(hours=24),
        stripes: int = 64,
    ) -> None:
        self._store = store
        self._audit = audit
        self._trusted = trusted_reliability
        self._reputable = reputable_reliability
        self._tolerance = first_seen_tolerance
        self._locks = [asyncio.Lock() for _ in range(max(1, stripes))]
        self._pending: dict[_Key, _Pending] = {}
        self._owned: dict[str, dict[_Key, None]] = {}
        self._contributed: dict[str, set[_Key]] = {}
        self._rebuilt: dict[str, dict[_Key, None]] = {}
        self._active: set[str] = set()

    @classmethod
    def from_settings(
        cls, store: IndicatorStore, settings: Settings, *, audit: AuditLogger | None = None
    ) -> IdentityResolver:
        return cls(
            store,
            audit=audit,
            trusted_reliability=settings.trusted_reliability,
            reputable_reliability=settings.reputable_reliability,
            first_seen_tolerance=timedelta(hours=settings.first_seen_tolerance_hours),
            stripes=settings.lock_stripes,
        )

    def lock_for(self, fp: bytes) -> asyncio.Lock:
        return self._locks[int.from_bytes(fp[:8], "big") % len(self._locks)]

    # ------------------------------------------------------------------
    # Upsert
    # ------------------------------------------------------------------

    async def upsert(
        self,
        ctx: TenantContext,
        incoming: Indicator,
        *,
        reliability: float,
        owner: str | None = None,
    ) -> Decision:
        """Resolve *incoming* against the tenant's identity map.

        With an *owner* (a sync job id) new records stay pending until that
        owner commits them.  Without one they are stored immediately.
        """
        ctx.require(Permission.WRITE)
        observation = incoming.model_copy(update={"tenant_id": ctx.tenant_id}, deep=True)
        fp = observation.fingerprint()
        key = (ctx.tenant_id, fp)
        trusted = reliability >= self._trusted

        async with self.lock_for(fp):
            entry = self._pending.get(key)
            if entry is not None:
                return await self._merge_pending(ctx, entry, observation, reliability, trusted, owner)

            existing = await self._store.find_by_fingerprint(ctx, fp)
            if existing is None:
                return await self._create(ctx, key, observation, reliability, trusted, owner)

            reason = conflict_reason(
                existing, observation, incoming_trusted=trusted, tolerance=self._tolerance
            )
            if reason is not None:
                await self._record_conflict(ctx, existing.indicator_id, reason, observation)
                return Decision(DecisionKind.CONFLICTED, existing.indicator_id, existing, reason=reason)

            changed = merge_observation(
                existing,
                observation,
                reliability=reliability,
                reputable_reliability=self._reputable,
                trusted=trusted,
            )
            if changed:
                existing = await self._store.update(ctx, existing)
            return Decision(DecisionKind.CORROBORATED, existing.indicator_id, existing, changed=changed)

    async def _create(
        self,
        ctx: TenantContext,
        key: _Key,
        observation: Indicator,
        reliability: float,
        trusted: bool,
        owner: str | None,
    ) -> Decision:
        observation.indicator_id = ""
        observation.ensure_id()
        observation.first_seen_trusted = trusted
        if owner is None:
            stored = await self._store.store(ctx, observation)
            return Decision(DecisionKind.CREATED, stored.indicator_id, stored, changed=True)

        entry = _Pending(
            key=key,
            indicator_id=observation.indicator_id,
            owner=owner,
            merged=observation,
            contributions=[_Contribution(owner, observation.model_copy(deep=True), reliability)],
        )
        self._pending[key] = entry
        self._owned.setdefault(owner, {})[key] = None
        return Decision(DecisionKind.CREATED, entry.indicator_id, observation, changed=True, pending=True)

    async def _merge_pending(
        self,
        ctx: TenantContext,
        entry: _Pending,
        observation: Indicator,
        reliability: float,
        trusted: bool,
        owner: str | None,
    ) -> Decision:
        reason = conflict_reason(
            entry.merged, observation, incoming_trusted=trusted, tolerance=self._tolerance
        )
        if reason is not None:
            await self._record_conflict(ctx, entry.indicator_id, reason, observation)
            return Decision(
                DecisionKind.CONFLICTED, entry.indicator_id, entry.merged, reason=reason, pending=True
            )

        changed = merge_observation(
            entry.merged,
            observation,
            reliability=reliability,
            reputable_reliability=self._reputable,
            trusted=trusted,
        )
        entry.contributions.append(_Contribution(owner, observation, reliability))
        entry.revision += 1
        if owner is not None and owner != entry.owner:
            self._contributed.setdefault(owner, set()).add(entry.key)
        return Decision(
            DecisionKind.CORROBORATED, entry.indicator_id, entry.merged, changed=changed, pending=True
        )

    async def _record_conflict(
        self, ctx: TenantContext, indicator_id: str, reason: str, observation: Indicator
    ) -> None:
        feed_id = ",".join(sorted(observation.source_feeds))
        logger.warning(
            "Dedup conflict on %s (%s:%s): %s",
            indicator_id,
            observation.kind,
            observation.value,
            reason,
            extra={"tenant_id": ctx.tenant_id, "feed_id": feed_id},
        )
        if self._audit is not None:
            await self._audit.log_conflict(
                ctx, indicator_id, reason, observation.to_canonical(), feed_id=feed_id
            )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def lookup(self, ctx: TenantContext, kind: str, value: str) -> str | None:
        """Return the id for a ``(kind, raw value)`` pair, pending or committed."""
        probe = Indicator(kind=kind, value=value)
        fp = probe.fingerprint()
        entry = self._pending.get((ctx.tenant_id, fp))
        if entry is not None:
            return entry.indicator_id
        existing = await self._store.find_by_fingerprint(ctx, fp)
        return existing.indicator_id if existing is not None else None

    async def apply(
        self,
        ctx: TenantContext,
        indicator: Indicator,
        mutate: Callable[[Indicator], Awaitable[None]],
    ) -> Indicator:
        """Re-read a committed indicator, mutate it and write it back under its stripe lock."""
        async with self.lock_for(indicator.fingerprint()):
            current = await self._store.get(ctx, indicator.indicator_id)
            await mutate(current)
            return await self._store.update(ctx, current)

    # ------------------------------------------------------------------
    # Job ownership
    # ------------------------------------------------------------------

    def begin(self, owner: str) -> None:
        self._active.add(owner)
        self._owned.setdefault(owner, {})

    def pending_count(self, owner: str) -> int:
        return len(self._owned.get(owner, {}))

    def claim(self, owner: str, limit: int) -> list[Claim]:
        """Snapshot up to *limit* of *owner*'s pending records for ``bulk_store``."""
        claims: list[Claim] = []
        for key in self._owned.get(owner, {}):
            if len(claims) >= limit:
                break
            entry = self._pending[key]
            claims.append(Claim(key, entry.revision, entry.merged.model_copy(deep=True)))
        return claims

    def take_rebuilt(self, owner: str) -> list[Indicator]:
        """Pending records rebuilt after another job's rollback, needing enrichment again."""
        keys = self._rebuilt.pop(owner, {})
        return [self._pending[k].merged for k in keys if k in self._pending]

    async def commit(self, ctx: TenantContext, owner: str, claims: list[Claim]) -> int:
        """Retire claimed entries after a successful ``bulk_store``.

        Entries corroborated after the snapshot was taken are written back
        with ``update``.  Returns the number of such catch-up writes.
        """
        owned = self._owned.get(owner, {})
        catch_up = 0
        for claim in claims:
            async with self.lock_for(claim.key[1]):
                entry = self._pending.get(claim.key)
                if entry is None or entry.owner != owner:
                    continue
                del self._pending[claim.key]
                owned.pop(claim.key, None)
                if entry.revision != claim.revision:
                    await self._store.update(ctx, entry.merged)
                    catch_up += 1
        return catch_up

    def release(self, owner: str) -> None:
        """Forget a job that finished and flushed everything it created."""
        self._active.discard(owner)
        self._contributed.pop(owner, None)
        self._rebuilt.pop(owner, None)
        leftover = self._owned.pop(owner, {})
        if leftover:
            logger.warning("Job %s released with %d uncommitted records", owner, len(leftover))
            for key in leftover:
                self._pending.pop(key, None)

    async def rollback(self, ctx: TenantContext, owner: str) -> int:
        """Discard *owner*'s uncommitted observations.

        Returns the number of pending records dropped outright.
        """
        self._active.discard(owner)
        self._rebuilt.pop(owner, None)
        owned = list(self._owned.pop(owner, {}))
        touched = self._contributed.pop(owner, set())
        dropped = 0

        for key in [*owned, *sorted(touched - set(owned))]:
            async with self.lock_for(key[1]):
                entry = self._pending.get(key)
                if entry is None:
                    continue
                remaining = [c for c in entry.contributions if c.owner != owner]
                if not remaining:
                    del self._pending[key]
                    dropped += 1
                    continue
                entry.contributions = remaining
                entry.merged = self._rebuild(entry.indicator_id, remaining)
                entry.revision += 1
                if entry.owner != owner:
                    self._rebuilt.setdefault(entry.owner, {})[key] = None
                    continue
                heir = next((c.owner for c in remaining if c.owner in self._active), None)
                if heir is not None:
                    entry.owner = heir
                    self._owned.setdefault(heir, {})[key] = None
                    self._rebuilt.setdefault(heir, {})[key] = None
                else:
                    del self._pending[key]
                    await self._store.store(ctx, entry.merged)

        logger.info(
            "Rolled back job %s: %d pending records dropped", owner, dropped, extra={"job_id": owner}
        )
        return dropped

    def _rebuild(self, indicator_id: str, contributions: list[_Contribution]) -> Indicator:
        first = contributions[0]
        merged = first.observation.model_copy(deep=True)
        merged.indicator_id = indicator_id
        merged.first_seen_trusted = first.reliability >= self._trusted
        for contribution in contributions[1:]:
            merge_observation(
                merged,
                contribution.observation,
                reliability=contribution.reliability,
                reputable_reliability=self._reputable,
                trusted=contribution.reliability >= self._trusted,
            )
        return merged
