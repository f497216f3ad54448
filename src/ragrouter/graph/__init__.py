"""Graph store backends."""

from .neo4j_store import Neo4jGraphStore
from .store import Direction, GraphNode, GraphPath, GraphRelationship, GraphStore, InMemoryGraphStore

__all__ = [
    "Direction",
    "GraphNode",
    "GraphPath",
    "GraphRelationship",
    "GraphStore",
    "InMemoryGraphStore",
    "Neo4jGraphStore",
]
