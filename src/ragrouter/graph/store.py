"""Graph store interface and an in-process implementation."""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Protocol, Sequence

Direction = Literal["outgoing", "incoming", "both"]


@dataclass(frozen=True)
class GraphNode:
    id: str
    labels: Sequence[str] = ("Entity",)
    name: str = ""
    properties: Mapping[str, Any] = field(default_factory=dict)

    @property
    def content(self) -> str:
        value = self.properties.get("content") or self.properties.get("description")
        return str(value) if value else self.name


@dataclass(frozen=True)
class GraphRelationship:
    id: str
    type: str
    start_id: str
    end_id: str
    properties: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GraphPath:
    """A traversal path; ``nodes`` has one more element than ``relationships``."""

    nodes: Sequence[GraphNode]
    relationships: Sequence[GraphRelationship]

    @property
    def length(self) -> int:
        return len(self.relationships)

    @property
    def start(self) -> GraphNode:
        return self.nodes[0]

    @property
    def end(self) -> GraphNode:
        return self.nodes[-1]


class GraphStore(Protocol):
    """Protocol for graph backends queried by graph-aware retrievers."""

    name: str

    def find_entities(self, names: Sequence[str], *, limit: int = 10) -> Sequence[GraphNode]:
        """Return nodes whose name matches any of ``names`` (case-insensitive)."""

    def find_related(
        self,
        start_id: str,
        *,
        start_label: str = "Entity",
        max_depth: int = 3,
        relationship_types: Sequence[str] = (),
        direction: Direction = "both",
        limit: int = 100,
    ) -> Sequence[GraphPath]:
        """Return paths of length 1..max_depth from the start node, shortest first."""

    def ping(self) -> bool:
        """Return True when the backend answers."""

    def close(self) -> None:
        """Release backend resources."""


class InMemoryGraphStore:
    """Adjacency-list graph used for tests and offline evaluation."""

    name = "memory-graph"

    def __init__(self) -> None:
        self._nodes: Dict[str, GraphNode] = {}
        self._edges: Dict[str, List[GraphRelationship]] = {}
        self._lock = threading.Lock()

    def add_node(self, node: GraphNode) -> None:
        with self._lock:
            self._nodes[node.id] = node
            self._edges.setdefault(node.id, [])

    def add_relationship(self, relationship: GraphRelationship) -> None:
        with self._lock:
            for node_id in (relationship.start_id, relationship.end_id):
                if node_id not in self._nodes:
                    raise KeyError(f"Unknown node {node_id}")
            self._edges[relationship.start_id].append(relationship)
            if relationship.end_id != relationship.start_id:
                self._edges[relationship.end_id].append(relationship)

    def find_entities(self, names: Sequence[str], *, limit: int = 10) -> Sequence[GraphNode]:
        wanted = {name.lower() for name in names}
        matches = [node for node in self._nodes.values() if node.name.lower() in wanted]
        return matches[:limit]

    def find_related(
        self,
        start_id: str,
        *,
        start_label: str = "Entity",
        max_depth: int = 3,
        relationship_types: Sequence[str] = (),
        direction: Direction = "both",
        limit: int = 100,
    ) -> Sequence[GraphPath]:
        start = self._nodes.get(start_id)
        if start is None or start_label not in start.labels:
            return []
        allowed = set(relationship_types)
        paths: List[GraphPath] = []
        frontier: deque[tuple[List[GraphNode], List[GraphRelationship]]] = deque([([start], [])])
        # breadth-first, so paths come out shortest first
        while frontier and len(paths) < limit:
            nodes, rels = frontier.popleft()
            if len(rels) >= max_depth:
                continue
            current = nodes[-1]
            visited = {node.id for node in nodes}
            for rel in self._edges.get(current.id, []):
                if allowed and rel.type not in allowed:
                    continue
                next_id = self._step(rel, current.id, direction)
                if next_id is None or next_id in visited:
                    continue
                path_nodes = [*nodes, self._nodes[next_id]]
                path_rels = [*rels, rel]
                paths.append(GraphPath(nodes=tuple(path_nodes), relationships=tuple(path_rels)))
                if len(paths) >= limit:
                    break
                frontier.append((path_nodes, path_rels))
        return paths

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None

    @staticmethod
    def _step(rel: GraphRelationship, current_id: str, direction: Direction) -> str | None:
        if rel.start_id == current_id and direction in ("outgoing", "both"):
            return rel.end_id
        if rel.end_id == current_id and direction in ("incoming", "both"):
            return rel.start_id
        return None
