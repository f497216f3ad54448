"""Neo4j-backed graph store."""

from __future__ import annotations

import logging
import re
from typing import Any, Sequence

from neo4j import Driver, GraphDatabase
from neo4j.exceptions import DriverError, Neo4jError

from ragrouter.errors import ConfigurationError, StoreError
from ragrouter.graph.store import Direction, GraphNode, GraphPath, GraphRelationship

LOGGER = logging.getLogger(__name__)

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _identifier(value: str) -> str:
    if not _IDENTIFIER_RE.match(value):
        raise ConfigurationError(f"Invalid Cypher identifier: {value!r}")
    return value


class Neo4jGraphStore:
    """Graph store over the official neo4j driver."""

    name = "neo4j"

    def __init__(
        self,
        uri: str,
        user: str,
        password: str | None,
        *,
        database: str | None = None,
        driver: Driver | None = None,
    ) -> None:
        self._driver = driver or GraphDatabase.driver(uri, auth=(user, password or ""))
        self._database = database
        LOGGER.info("Neo4j graph store configured for %s", uri)

    def find_entities(self, names: Sequence[str], *, limit: int = 10) -> Sequence[GraphNode]:
        if not names:
            return []
        cypher = "MATCH (e:Entity) WHERE toLower(e.name) IN $names RETURN e LIMIT $limit"
        records = self._execute(cypher, names=[name.lower() for name in names], limit=limit)
        return [self._to_node(record["e"]) for record in records]

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
        label = _identifier(start_label)
        rel_filter = ""
        if relationship_types:
            rel_filter = ":" + "|".join(_identifier(rel_type) for rel_type in relationship_types)
        hops = f"*1..{max(1, int(max_depth))}"
        left, right = {"outgoing": ("-", "->"), "incoming": ("<-", "-"), "both": ("-", "-")}[direction]
        # Node ids fall back to elementId when the id property is missing, see _node_id.
        cypher = (
            f"MATCH path = (start:{label}){left}[{rel_filter}{hops}]{right}(end) "
            "WHERE start.id = $start_id OR elementId(start) = $start_id "
            "WITH path, length(path) AS path_length "
            "ORDER BY path_length "
            "LIMIT $limit "
            "RETURN nodes(path) AS nodes, relationships(path) AS rels"
        )
        records = self._execute(cypher, start_id=start_id, limit=limit)
        return [
            GraphPath(
                nodes=tuple(self._to_node(node) for node in record["nodes"]),
                relationships=tuple(self._to_relationship(rel) for rel in record["rels"]),
            )
            for record in records
        ]

    def ping(self) -> bool:
        try:
            self._driver.verify_connectivity()
            return True
        except (DriverError, Neo4jError):
            return False

    def close(self) -> None:
        self._driver.close()

    def _execute(self, cypher: str, **parameters: Any) -> list[Any]:
        try:
            records, _, _ = self._driver.execute_query(cypher, parameters, database_=self._database)
        except (DriverError, Neo4jError) as exc:
            raise StoreError("Neo4j query failed") from exc
        return list(records)

    @staticmethod
    def _node_id(node: Any) -> str:
        return str(node.get("id") or node.element_id)

    @classmethod
    def _to_node(cls, node: Any) -> GraphNode:
        properties = dict(node)
        return GraphNode(
            id=cls._node_id(node),
            labels=tuple(node.labels),
            name=str(properties.get("name", "")),
            properties=properties,
        )

    @classmethod
    def _to_relationship(cls, rel: Any) -> GraphRelationship:
        return GraphRelationship(
            id=str(rel.element_id),
            type=str(rel.type),
            start_id=cls._node_id(rel.start_node),
            end_id=cls._node_id(rel.end_node),
            properties=dict(rel),
        )
