# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Union-find cluster maintenance over strong edges.

Strong edges are ``same-as`` edges and ``related-to`` edges at or above the
cluster threshold.  Insertions merge incrementally; a retraction recomputes
only the component that contained the retracted edge.  Readers never see
the mutable structure: :meth:`ClusterIndex.snapshot` returns an immutable
:class:`ClusterSnapshot` that is rebuilt only after a change.

Mutations contain no suspension points, so each one is atomic with respect
to the event loop.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from tiace.core.constants import RelationshipType
from tiace.models.entities import Cluster, Relationship

_EdgeKey = tuple[str, str, str]


@dataclass(frozen=True, slots=True)
class ClusterSnapshot:
    """Consistent, read-only view of cluster membership for one tenant.

    Only components with two or more members are clusters.
    """

    tenant_id: str
    version: int
    members: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    assignment: Mapping[str, str] = field(default_factory=dict)

    def cluster_of(self, entity_id: str) -> str | None:
        return self.assignment.get(entity_id)

    def members_of(self, cluster_id: str) -> tuple[str, ...]:
        return self.members.get(cluster_id, ())

    def __len__(self) -> int:
        return len(self.members)

    def clusters(self) -> list[Cluster]:
        return [
            Cluster(
                cluster_id=cluster_id,
                tenant_id=self.tenant_id,
                members=list(members),
                representative=members[0],
            )
            for cluster_id, members in sorted(self.members.items())
        ]


class ClusterIndex:
    def __init__(self, tenant_id: str, *, threshold: float = 0.75) -> None:
        self.tenant_id = tenant_id
        self.threshold = threshold
        self._parent: dict[str, str] = {}
        self._strong: dict[str, dict[str, set[_EdgeKey]]] = {}
        self._version = 0
        self._snapshot: ClusterSnapshot | None = None

    def is_strong(self, edge: Relationship) -> bool:
        if edge.relationship_type == RelationshipType.SAME_AS:
            return True
        return edge.relationship_type == RelationshipType.RELATED_TO and edge.confidence >= self.threshold

    # ------------------------------------------------------------------
    # Union-find
    # ------------------------------------------------------------------

    def _find(self, node: str) -> str:
        root = node
        while self._parent.get(root, root) != root:
            root = self._parent[root]
        while node != root:
            nxt = self._parent.get(node, node)
            self._parent[node] = root
            node = nxt
        return root

    def _union(self, a: str, b: str) -> None:
        ra, rb = self._find(a), self._find(b)
        if ra == rb:
            return
        # The lexicographically smallest id stays root so representatives are stable.
        if rb < ra:
            ra, rb = rb, ra
        self._parent[rb] = ra

    def _recompute(self, nodes: Iterable[str]) -> None:
        """Rebuild parent links inside the old components of *nodes*."""
        nodes = list(nodes)
        roots = {self._find(n) for n in nodes}
        stale = [n for n in list(self._parent) if self._find(n) in roots]
        affected = {*stale, *roots, *nodes}
        for node in affected:
            self._parent.pop(node, None)
        for node in sorted(affected):
            for other in self._strong.get(node, {}):
                self._union(node, other)

    def _changed(self) -> None:
        self._version += 1
        self._snapshot = None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_edge(self, edge: Relationship) -> bool:
        """Record *edge*; returns ``True`` if cluster membership may have changed."""
        if not self.is_strong(edge) or edge.source_id == edge.target_id:
            return False
        a, b = edge.source_id, edge.target_id
        self._strong.setdefault(a, {}).setdefault(b, set()).add(edge.key)
        self._strong.setdefault(b, {}).setdefault(a, set()).add(edge.key)
        if self._find(a) == self._find(b):
            return False
        self._union(a, b)
        self._changed()
        return True

    def remove_edge(self, key: _EdgeKey) -> bool:
        a, b, _ = key
        keys = self._strong.get(a, {}).get(b)
        if not keys or key not in keys:
            return False
        keys.discard(key)
        self._strong[b][a].discard(key)
        if keys:
            return False
        del self._strong[a][b]
        del self._strong[b][a]
        self._recompute((a, b))
        self._changed()
        return True

    def remove_node(self, node: str) -> bool:
        neighbours = list(self._strong.pop(node, {}))
        for other in neighbours:
            self._strong.get(other, {}).pop(node, None)
        was_clustered = bool(neighbours) or node in self._parent
        self._recompute([node, *neighbours])
        self._parent.pop(node, None)
        if was_clustered:
            self._changed()
        return was_clustered

    def clear(self) -> None:
        self._parent.clear()
        self._strong.clear()
        self._changed()

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def snapshot(self) -> ClusterSnapshot:
        if self._snapshot is not None:
            return self._snapshot
        groups: dict[str, list[str]] = {}
        for node in self._strong:
            if self._strong[node]:
                groups.setdefault(self._find(node), []).append(node)
        members: dict[str, tuple[str, ...]] = {}
        assignment: dict[str, str] = {}
        for group in groups.values():
            if len(group) < 2:
                continue
            ordered = tuple(sorted(group))
            cluster_id = Cluster.id_for(self.tenant_id, ordered[0])
            members[cluster_id] = ordered
            for node in ordered:
                assignment[node] = cluster_id
        self._snapshot = ClusterSnapshot(
            tenant_id=self.tenant_id,
            version=self._version,
            members=MappingProxyType(members),
            assignment=MappingProxyType(assignment),
        )
        return self._snapshot
