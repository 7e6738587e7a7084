# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Correlation rules.

Rules run in numeric order over the facts of one indicator and propose
edges:

1. Identical fingerprint: already merged by dedup, never correlated.
2. Shared hash across indicators of different kinds: ``indicates-presence-of``
   with the minimum endpoint confidence.
3. Shared infrastructure (same ASN, overlapping active window, both tagged
   malicious): ``related-to`` whose confidence decays with the breadth of the
   shared tuple.
4. Shared actor attribution from independent feeds: ``same-as`` between the
   attributed actors, confidence ``1 - prod(1 - c_i)``.

Proposals for the same endpoint pair are resolved with :func:`prefer`.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from itertools import combinations

from tiace.core.constants import MALICIOUS_TAGS, IndicatorKind, RelationshipType
from tiace.models.entities import Relationship
from tiace.models.indicator import Indicator

RULE_IDENTICAL = 1
RULE_SHARED_HASH = 2
RULE_SHARED_INFRASTRUCTURE = 3
RULE_SHARED_ACTOR = 4

RULE_NAMES = {
    RULE_IDENTICAL: "identical-fingerprint",
    RULE_SHARED_HASH: "shared-hash",
    RULE_SHARED_INFRASTRUCTURE: "shared-infrastructure",
    RULE_SHARED_ACTOR: "shared-actor",
}


@dataclass(frozen=True, slots=True)
class NodeFacts:
    """The subset of an indicator the rules look at."""

    indicator_id: str
    kind: str
    value: str
    confidence: float
    first_seen: datetime
    last_seen: datetime
    asn: str | None = None
    hashes: frozenset[str] = frozenset()
    malicious: bool = False

    @classmethod
    def of(cls, indicator: Indicator) -> NodeFacts:
        return cls(
            indicator_id=indicator.indicator_id,
            kind=indicator.kind,
            value=indicator.value,
            confidence=indicator.confidence,
            first_seen=indicator.first_seen,
            last_seen=indicator.last_seen,
            asn=indicator.context.asn,
            hashes=frozenset(h.lower() for h in indicator.context.hashes),
            malicious=bool(indicator.tags & MALICIOUS_TAGS),
        )

    def overlaps(self, other: NodeFacts) -> bool:
        return self.first_seen <= other.last_seen and other.first_seen <= self.last_seen


def _edge(tenant_id: str, source: str, target: str, rel: str, confidence: float, rule_id: int) -> Relationship:
    return Relationship(
        tenant_id=tenant_id,
        source_id=source,
        target_id=target,
        relationship_type=rel,
        confidence=round(min(1.0, max(0.0, confidence)), 6),
        rule_id=rule_id,
        origin=RULE_NAMES[rule_id],
    )


def _ordered(a: str, b: str) -> tuple[str, str]:
    return (a, b) if a <= b else (b, a)


def shared_hash(
    tenant_id: str,
    node: NodeFacts,
    facts: Mapping[str, NodeFacts],
    hash_refs: Mapping[str, set[str]],
    hash_indicators: Mapping[str, str],
) -> list[Relationship]:
    """Rule 2.  Edges point from the observing indicator to the hash indicator."""
    proposals: list[Relationship] = []
    if node.kind == IndicatorKind.HASH:
        for other_id in sorted(hash_refs.get(node.value, ())):
            other = facts.get(other_id)
            if other is None or other_id == node.indicator_id:
                continue
            proposals.append(
                _edge(
                    tenant_id,
                    other_id,
                    node.indicator_id,
                    RelationshipType.INDICATES_PRESENCE_OF,
                    min(node.confidence, other.confidence),
                    RULE_SHARED_HASH,
                )
            )
        return proposals

    for digest in sorted(node.hashes):
        hash_id = hash_indicators.get(digest)
        if hash_id is not None and hash_id in facts:
            proposals.append(
                _edge(
                    tenant_id,
                    node.indicator_id,
                    hash_id,
                    RelationshipType.INDICATES_PRESENCE_OF,
                    min(node.confidence, facts[hash_id].confidence),
                    RULE_SHARED_HASH,
                )
            )
        for other_id in sorted(hash_refs.get(digest, ())):
            other = facts.get(other_id)
            if other is None or other_id == node.indicator_id or other.kind == node.kind:
                continue
            source, target = _ordered(node.indicator_id, other_id)
            proposals.append(
                _edge(
                    tenant_id,
                    source,
                    target,
                    RelationshipType.INDICATES_PRESENCE_OF,
                    min(node.confidence, other.confidence),
                    RULE_SHARED_HASH,
                )
            )
    return proposals


def shared_infrastructure(
    tenant_id: str,
    node: NodeFacts,
    facts: Mapping[str, NodeFacts],
    asn_members: Mapping[str, set[str]],
    *,
    decay: float = 0.9,
    fanout: int = 50,
) -> list[Relationship]:
    """Rule 3.  Breadth is the number of indicators sharing the tuple."""
    if not node.malicious or not node.asn:
        return []
    peers = [
        facts[other_id]
        for other_id in asn_members.get(node.asn, ())
        if other_id != node.indicator_id
        and other_id in facts
        and facts[other_id].malicious
        and facts[other_id].overlaps(node)
    ]
    if not peers:
        return []
    breadth = len(peers) + 1
    factor = decay ** (breadth - 2)
    peers.sort(key=lambda f: (-f.last_seen.timestamp(), f.indicator_id))
    proposals: list[Relationship] = []
    for peer in peers[:fanout]:
        source, target = _ordered(node.indicator_id, peer.indicator_id)
        proposals.append(
            _edge(
                tenant_id,
                source,
                target,
                RelationshipType.RELATED_TO,
                min(node.confidence, peer.confidence) * factor,
                RULE_SHARED_INFRASTRUCTURE,
            )
        )
    return proposals


def shared_actor(
    tenant_id: str,
    attributions: Mapping[str, Iterable[tuple[str, float]]],
) -> list[Relationship]:
    """Rule 4.

    *attributions* maps an actor id to the ``(feed_id, confidence)`` pairs
    attributing one indicator to that actor.  Two distinct actors named by at
    least two independent feeds are linked; each feed counts once, at its
    highest confidence.
    """
    proposals: list[Relationship] = []
    for a, b in combinations(sorted(attributions), 2):
        per_feed: dict[str, float] = {}
        for feed_id, confidence in [*attributions[a], *attributions[b]]:
            per_feed[feed_id] = max(per_feed.get(feed_id, 0.0), confidence)
        if len(per_feed) < 2:
            continue
        distrust = 1.0
        for confidence in per_feed.values():
            distrust *= 1.0 - confidence
        proposals.append(
            _edge(tenant_id, a, b, RelationshipType.SAME_AS, 1.0 - distrust, RULE_SHARED_ACTOR)
        )
    return proposals


def prefer(current: Relationship, candidate: Relationship) -> Relationship:
    """Pick the winning edge for one endpoint pair.

    ``same-as`` is never replaced by a weaker type.  Otherwise the higher
    confidence wins, then the lower rule id.
    """
    current_same = current.relationship_type == RelationshipType.SAME_AS
    candidate_same = candidate.relationship_type == RelationshipType.SAME_AS
    if current_same != candidate_same:
        return current if current_same else candidate
    if candidate.confidence != current.confidence:
        return candidate if candidate.confidence > current.confidence else current
    return candidate if candidate.rule_id < current.rule_id else current


def pair_of(edge: Relationship) -> tuple[str, str]:
    return _ordered(edge.source_id, edge.target_id)


def resolve_proposals(proposals: Iterable[Relationship]) -> dict[tuple[str, str], Relationship]:
    """Reduce proposals to one winner per unordered endpoint pair."""
    winners: dict[tuple[str, str], Relationship] = {}
    for proposal in proposals:
        pair = pair_of(proposal)
        current = winners.get(pair)
        winners[pair] = proposal if current is None else prefer(current, proposal)
    return winners
