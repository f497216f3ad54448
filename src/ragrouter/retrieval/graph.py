"""Routing-aware retrieval over the graph store and the vector store."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Dict, Mapping, Sequence

from neo4j.time import DateTime as Neo4jDateTime

from ragrouter.analysis import extract_entities, extract_keywords
from ragrouter.embeddings.service import EmbeddingProvider
from ragrouter.embeddings.store import VectorStore
from ragrouter.errors import RagError, StoreError
from ragrouter.graph.store import GraphPath, GraphStore
from ragrouter.metrics.observability import Stopwatch, get_logger
from ragrouter.models import Query, QueryFilters, RagResponse, RetrievalResult, Strategy
from ragrouter.retrieval.base import (
    StrategyConfig,
    VectorSearcher,
    build_response,
    clamp_score,
    dedupe_results,
    rank_results,
    result_from_chunk,
    select_granularity,
)
from ragrouter.routing.router import DatabaseRouter, RoutingDecision, StoreKind

UNKNOWN_RELATIONSHIP_WEIGHT = 0.5
HOP_DECAY = 0.9

_DEFAULT_DECISION = RoutingDecision(
    primary_store=StoreKind.VECTOR,
    secondary_store=StoreKind.GRAPH,
    use_hybrid=True,
    reasoning="No routing decision supplied, querying both stores",
)


def score_path(path: GraphPath, weights: Mapping[str, float]) -> float:
    """Product of relationship weights, decayed per extra hop."""

    score = 1.0
    for rel in path.relationships:
        score *= weights.get(rel.type.lower(), weights.get(rel.type, UNKNOWN_RELATIONSHIP_WEIGHT))
    return clamp_score(score * HOP_DECAY ** max(path.length - 1, 0))


def matches_filters(properties: Mapping[str, object], filters: QueryFilters | None) -> bool:
    """Apply query filters to graph node properties. A node missing a filtered field does not match."""

    if filters is None or filters.is_empty():
        return True
    checks = (
        ("document_id", filters.document_ids),
        ("source", filters.sources),
        ("content_type", filters.content_types),
        ("language", filters.languages),
    )
    for key, allowed in checks:
        if allowed and properties.get(key) not in allowed:
            return False
    if filters.date_range:
        created = _created_at(properties.get("created_at"))
        if created is None:
            return False
        start, end = (_utc(value) for value in filters.date_range)
        if not start <= created <= end:
            return False
    return True


def _created_at(value: object) -> datetime | None:
    if isinstance(value, Neo4jDateTime):
        value = value.to_native()
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return None
    return _utc(value) if isinstance(value, datetime) else None


def _utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def describe_path(path: GraphPath) -> list[str]:
    steps = [path.nodes[0].name or path.nodes[0].id]
    for rel, node in zip(path.relationships, path.nodes[1:]):
        steps.extend([rel.type, node.name or node.id])
    return steps


class GraphRetriever:
    """Serve a query from the store(s) selected by the router."""

    strategy = Strategy.GRAPH_RAG
    name = "GraphRetriever"
    uses_routing = True

    def __init__(self, provider: EmbeddingProvider, vector_store: VectorStore, router: DatabaseRouter) -> None:
        self._searcher = VectorSearcher(provider, vector_store)
        self._router = router
        self._logger = get_logger("retrieval.graph")

    async def retrieve(self, query: Query, config: StrategyConfig) -> RagResponse:
        total = Stopwatch()
        decision = config.routing or _DEFAULT_DECISION
        routed = self._router.resolve_stores(decision)
        handles = {decision.primary_store: routed.primary}
        if decision.secondary_store is not None:
            handles[decision.secondary_store] = routed.secondary

        granularity = select_granularity(query)
        embedding_ms = 0.0
        branches = []
        if StoreKind.VECTOR in handles:
            vector, embedding_ms = await self._searcher.embed_query(query.text)
            branches.append(self._vector_branch(query, config, vector, granularity, handles[StoreKind.VECTOR]))
        if StoreKind.GRAPH in handles:
            branches.append(self._graph_branch(query, config, handles[StoreKind.GRAPH]))

        search_watch = Stopwatch()
        gathered = await asyncio.gather(*branches)
        retrieval_ms = search_watch.elapsed_ms()

        combined: list[RetrievalResult] = [item for branch in gathered for item in branch]
        ranked = rank_results(dedupe_results(combined), config.top_k)
        stores = [kind.value for kind in decision.stores]
        response = build_response(
            query,
            config,
            self.strategy,
            ranked,
            total=total,
            embedding_ms=embedding_ms,
            retrieval_ms=retrieval_ms,
            granularity=granularity,
            method=f"Combined {' and '.join(stores)} store evidence (max {config.max_hops} hops).",
            reasoning=decision.reasoning,
            index_used="+".join(stores),
            candidates=len(combined),
            store_routing=stores,
        )
        self._logger.info(
            "retrieval.graph.complete",
            query_id=query.query_id,
            policy=decision.policy,
            stores=stores,
            candidate_count=len(combined),
            result_count=len(ranked),
        )
        return response

    async def _vector_branch(
        self,
        query: Query,
        config: StrategyConfig,
        vector: Sequence[float],
        granularity: str,
        store: VectorStore,
    ) -> list[RetrievalResult]:
        hits = await self._searcher.search(
            vector,
            top_k=config.top_k,
            score_threshold=config.score_threshold,
            granularity=granularity,
            filters=query.filters,
            store=store,
        )
        return [result_from_chunk(hit.chunk, hit.score, self.strategy, dense_score=hit.score) for hit in hits]

    async def _graph_branch(self, query: Query, config: StrategyConfig, graph: GraphStore) -> list[RetrievalResult]:
        names = extract_entities(query.text) or extract_keywords(query.text)
        try:
            entities = await asyncio.to_thread(graph.find_entities, names)
            path_sets = await asyncio.gather(
                *(
                    asyncio.to_thread(graph.find_related, entity.id, max_depth=config.max_hops)
                    for entity in entities
                )
            )
        except RagError:
            raise
        except Exception as exc:
            raise StoreError("Graph traversal failed") from exc

        # Filtered-out entities still seed traversal; only returned nodes must match.
        best: Dict[str, RetrievalResult] = {}
        for entity in entities:
            if not matches_filters(entity.properties, query.filters):
                continue
            best[entity.id] = self._graph_result(entity.id, entity.content, entity.properties, 1.0, [entity.name])
        for paths in path_sets:
            for path in paths:
                end = path.end
                if not matches_filters(end.properties, query.filters):
                    continue
                score = score_path(path, config.relationship_weights)
                current = best.get(end.id)
                if current is not None and current.score >= score:
                    continue
                best[end.id] = self._graph_result(end.id, end.content, end.properties, score, describe_path(path))
        return [item for item in best.values() if item.score > config.score_threshold]

    def _graph_result(
        self,
        node_id: str,
        content: str,
        properties: Mapping[str, object],
        score: float,
        path: Sequence[str],
    ) -> RetrievalResult:
        chunk_id = str(properties.get("chunk_id") or f"graph:{node_id}")
        return RetrievalResult(
            id=chunk_id,
            content=content,
            score=clamp_score(score),
            rank=0,
            document_id=str(properties.get("document_id") or node_id),
            chunk_id=chunk_id,
            metadata={"retrieval_strategy": self.strategy.value, "source_store": StoreKind.GRAPH.value},
            entity_id=node_id,
            relationship_path=tuple(path),
        )

    async def health_check(self) -> bool:
        return await self._searcher.ping()
