"""Dense retrieve-then-read retriever."""

from __future__ import annotations

import asyncio

from ragrouter.embeddings.service import EmbeddingProvider
from ragrouter.embeddings.store import VectorStore
from ragrouter.metrics.observability import Stopwatch, get_logger
from ragrouter.models import Query, RagResponse, Strategy
from ragrouter.retrieval.base import (
    StrategyConfig,
    VectorSearcher,
    build_response,
    rank_results,
    result_from_chunk,
    select_granularity,
    wants_expanded_context,
)


class DenseRetriever:
    """Embed the query, search one granularity tier by cosine similarity, rank."""

    strategy = Strategy.RETRIEVE_READ
    name = "DenseRetriever"
    uses_routing = False

    def __init__(self, provider: EmbeddingProvider, store: VectorStore) -> None:
        self._searcher = VectorSearcher(provider, store)
        self._logger = get_logger("retrieval.dense")

    async def retrieve(self, query: Query, config: StrategyConfig) -> RagResponse:
        total = Stopwatch()
        vector, embedding_ms = await self._searcher.embed_query(query.text)

        granularity = select_granularity(query)
        search_watch = Stopwatch()
        hits = await self._searcher.search(
            vector,
            top_k=config.top_k,
            score_threshold=config.score_threshold,
            granularity=granularity,
            filters=query.filters,
        )
        retrieval_ms = search_watch.elapsed_ms()

        expanded: list[str | None] = [None] * len(hits)
        if hits and wants_expanded_context(query):
            expanded = list(await asyncio.gather(*(self._searcher.expand_context(hit.chunk) for hit in hits)))
        results = [
            result_from_chunk(
                hit.chunk,
                hit.score,
                self.strategy,
                dense_score=hit.score,
                expanded_context=context,
            )
            for hit, context in zip(hits, expanded)
        ]
        ranked = rank_results(results, config.top_k)

        response = build_response(
            query,
            config,
            self.strategy,
            ranked,
            total=total,
            embedding_ms=embedding_ms,
            retrieval_ms=retrieval_ms,
            granularity=granularity,
            method="Used dense vector search with cosine similarity.",
            reasoning="Standard dense retrieval with cosine similarity",
            index_used=f"{self._searcher.store.name}:hnsw_cosine",
            candidates=len(hits),
        )
        self._logger.info(
            "retrieval.dense.complete",
            query_id=query.query_id,
            granularity=granularity,
            result_count=len(ranked),
            duration_ms=response.total_latency,
        )
        return response

    async def health_check(self) -> bool:
        return await self._searcher.ping()
