# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Actor and campaign directory: many-to-one alias resolution onto entity ids."""

from __future__ import annotations

import asyncio
import logging

from tiace.core.constants import EntityType
from tiace.models.entities import Campaign, ThreatActor, derived_id
from tiace.models.tenant import TenantContext
from tiace.storage.base import IndicatorStore

logger = logging.getLogger(__name__)


def _norm(name: str) -> str:
    return " ".join(name.strip().lower().split())


class _TenantIndex:
    __slots__ = ("actors", "campaigns", "loaded", "lock")

    def __init__(self) -> None:
        self.actors: dict[str, str] = {}
        self.campaigns: dict[str, str] = {}
        self.loaded = False
        self.lock = asyncio.Lock()


class ActorDirectory:
    """Resolves actor names and aliases, creating entities on first sight.

    An alias already bound to one actor is never rebound to another.
    """

    def __init__(self, store: IndicatorStore) -> None:
        self._store = store
        self._tenants: dict[str, _TenantIndex] = {}

    async def _index(self, ctx: TenantContext) -> _TenantIndex:
        index = self._tenants.setdefault(ctx.tenant_id, _TenantIndex())
        if not index.loaded:
            async with index.lock:
                if not index.loaded:
                    for actor in await self._store.list_entities(ctx, EntityType.THREAT_ACTOR):
                        for name in actor.all_names():
                            index.actors.setdefault(_norm(name), actor.actor_id)
                    for campaign in await self._store.list_entities(ctx, EntityType.CAMPAIGN):
                        index.campaigns.setdefault(_norm(campaign.name), campaign.campaign_id)
                    index.loaded = True
        return index

    def forget(self, tenant_id: str) -> None:
        self._tenants.pop(tenant_id, None)

    async def register_actor(self, ctx: TenantContext, proto: ThreatActor) -> ThreatActor:
        """Merge *proto* into the actor it names, or store it as a new actor."""
        index = await self._index(ctx)
        async with index.lock:
            names = {_norm(n) for n in proto.all_names() if n.strip()}
            actor_id = next((index.actors[n] for n in sorted(names) if n in index.actors), None)
            if actor_id is None:
                actor = proto.model_copy(
                    update={
                        "actor_id": derived_id("actor", ctx.tenant_id, _norm(proto.name)),
                        "tenant_id": ctx.tenant_id,
                    },
                    deep=True,
                )
                await self._store.store_entity(ctx, actor)
                logger.info("New threat actor %s (%s)", actor.name, actor.actor_id)
            else:
                actor = await self._store.get_entity(ctx, actor_id)
                if _merge_actor(actor, proto):
                    await self._store.store_entity(ctx, actor)
            for name in names:
                index.actors.setdefault(name, actor.actor_id)
            return actor

    async def register_campaign(self, ctx: TenantContext, proto: Campaign) -> Campaign:
        index = await self._index(ctx)
        async with index.lock:
            key = _norm(proto.name)
            campaign_id = index.campaigns.get(key)
            if campaign_id is None:
                campaign = proto.model_copy(
                    update={
                        "campaign_id": derived_id("campaign", ctx.tenant_id, key),
                        "tenant_id": ctx.tenant_id,
                    },
                    deep=True,
                )
                await self._store.store_entity(ctx, campaign)
                index.campaigns[key] = campaign.campaign_id
            else:
                campaign = await self._store.get_entity(ctx, campaign_id)
                if _merge_campaign(campaign, proto):
                    await self._store.store_entity(ctx, campaign)
            return campaign

    async def resolve(self, ctx: TenantContext, entity_type: str, name: str) -> str:
        """Return the entity id for ``("actor" | "campaign", name)``, creating it if unknown."""
        index = await self._index(ctx)
        key = _norm(name)
        if entity_type == "actor":
            actor_id = index.actors.get(key)
            if actor_id is None:
                actor_id = (await self.register_actor(ctx, ThreatActor(name=name.strip()))).actor_id
            return actor_id
        if entity_type == "campaign":
            campaign_id = index.campaigns.get(key)
            if campaign_id is None:
                campaign_id = (await self.register_campaign(ctx, Campaign(name=name.strip()))).campaign_id
            return campaign_id
        raise ValueError(f"Unknown entity type {entity_type!r}")

    async def lookup_actor(self, ctx: TenantContext, name: str) -> str | None:
        index = await self._index(ctx)
        return index.actors.get(_norm(name))


def _merge_actor(actor: ThreatActor, proto: ThreatActor) -> bool:
    before = actor.model_dump_json()
    extra = {a for a in proto.all_names() if a != actor.name.strip().lower()}
    actor.aliases |= {a for a in proto.aliases | {proto.name} if a.strip().lower() in extra}
    actor.motivations |= proto.motivations
    actor.source_feeds |= proto.source_feeds
    actor.sophistication = actor.sophistication or proto.sophistication
    actor.origin = actor.origin or proto.origin
    actor.description = actor.description or proto.description
    if proto.first_activity and (actor.first_activity is None or proto.first_activity < actor.first_activity):
        actor.first_activity = proto.first_activity
    if proto.last_activity and (actor.last_activity is None or proto.last_activity > actor.last_activity):
        actor.last_activity = proto.last_activity
    return actor.model_dump_json() != before


def _merge_campaign(campaign: Campaign, proto: Campaign) -> bool:
    before = campaign.model_dump_json()
    campaign.actor = campaign.actor or proto.actor
    campaign.ttps |= proto.ttps
    campaign.malware_families |= proto.malware_families
    campaign.targets |= proto.targets
    campaign.source_feeds |= proto.source_feeds
    campaign.impact = campaign.impact or proto.impact
    campaign.description = campaign.description or proto.description
    if proto.first_seen and (campaign.first_seen is None or proto.first_seen < campaign.first_seen):
        campaign.first_seen = proto.first_seen
    if proto.last_seen and (campaign.last_seen is None or proto.last_seen > campaign.last_seen):
        campaign.last_seen = proto.last_seen
    return campaign.model_dump_json() != before
