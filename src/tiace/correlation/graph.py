# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""In-memory edge index for one tenant.

Indexed by endpoint and by ``(source_id, relationship_type)``; the store
remains the source of truth and the index is rebuilt from it on resync.

``parent-of`` and ``child-of`` edges together form one hierarchy, read as
``(parent, child)`` links by :func:`hierarchy_link`; it must stay acyclic.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from tiace.core.constants import RelationshipType
from tiace.models.entities import Relationship

_EdgeKey = tuple[str, str, str]


def hierarchy_link(edge: Relationship) -> tuple[str, str] | None:
    """``(parent, child)`` for hierarchy edges, ``None`` for everything else."""
    if edge.relationship_type == RelationshipType.PARENT_OF:
        return (edge.source_id, edge.target_id)
    if edge.relationship_type == RelationshipType.CHILD_OF:
        return (edge.target_id, edge.source_id)
    return None


def mirror_of(edge: Relationship) -> Relationship | None:
    """The reverse edge stored alongside a symmetric ``same-as`` edge."""
    if edge.relationship_type != RelationshipType.SAME_AS or edge.source_id == edge.target_id:
        return None
    return edge.reversed()


class EdgeIndex:
    def __init__(self) -> None:
        self._edges: dict[_EdgeKey, Relationship] = {}
        self._by_node: dict[str, set[_EdgeKey]] = {}
        self._by_source_type: dict[tuple[str, str], set[_EdgeKey]] = {}

    def __len__(self) -> int:
        return len(self._edges)

    def __contains__(self, key: object) -> bool:
        return key in self._edges

    def add(self, edge: Relationship) -> Relationship | None:
        """Insert or replace *edge*; returns the edge it replaced."""
        previous = self._edges.get(edge.key)
        self._edges[edge.key] = edge
        self._by_node.setdefault(edge.source_id, set()).add(edge.key)
        self._by_node.setdefault(edge.target_id, set()).add(edge.key)
        self._by_source_type.setdefault((edge.source_id, edge.relationship_type), set()).add(edge.key)
        return previous

    def remove(self, key: _EdgeKey) -> Relationship | None:
        edge = self._edges.pop(key, None)
        if edge is None:
            return None
        for node in (edge.source_id, edge.target_id):
            keys = self._by_node.get(node)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._by_node[node]
        bucket = self._by_source_type.get((edge.source_id, edge.relationship_type))
        if bucket is not None:
            bucket.discard(key)
            if not bucket:
                del self._by_source_type[(edge.source_id, edge.relationship_type)]
        return edge

    def remove_node(self, node: str) -> list[Relationship]:
        return [e for key in sorted(self._by_node.get(node, ())) if (e := self.remove(key)) is not None]

    def get(self, key: _EdgeKey) -> Relationship | None:
        return self._edges.get(key)

    def incident(self, node: str) -> list[Relationship]:
        return [self._edges[k] for k in sorted(self._by_node.get(node, ()))]

    def outgoing(self, source_id: str, relationship_type: str) -> list[Relationship]:
        return [self._edges[k] for k in sorted(self._by_source_type.get((source_id, relationship_type), ()))]

    def between(self, a: str, b: str) -> list[Relationship]:
        """Edges joining *a* and *b* in either direction."""
        keys = self._by_node.get(a, set()) & self._by_node.get(b, set())
        return [self._edges[k] for k in sorted(keys) if {k[0], k[1]} == {a, b}]

    def children(self, node: str) -> list[str]:
        return [
            link[1]
            for edge in self.incident(node)
            if (link := hierarchy_link(edge)) is not None and link[0] == node
        ]

    def reaches(self, start: str, goal: str, extra: Mapping[str, Iterable[str]] | None = None) -> bool:
        """Whether *goal* is *start* or one of its hierarchy descendants.

        *extra* holds additional ``parent -> children`` links not yet indexed.
        """
        extra = extra or {}
        seen: set[str] = set()
        stack = [start]
        while stack:
            node = stack.pop()
            if node == goal:
                return True
            if node in seen:
                continue
            seen.add(node)
            stack.extend(self.children(node))
            stack.extend(extra.get(node, ()))
        return False

    def edges(self) -> Iterable[Relationship]:
        return list(self._edges.values())

    def clear(self) -> None:
        self._edges.clear()
        self._by_node.clear()
        self._by_source_type.clear()
