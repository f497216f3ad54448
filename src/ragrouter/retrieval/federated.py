"""Federated retrieval across several vector store shards."""

from __future__ import annotations

import asyncio
from typing import Sequence

from ragrouter.embeddings.service import EmbeddingProvider
from ragrouter.embeddings.store import VectorStore
from ragrouter.errors import ConfigurationError
from ragrouter.metrics.observability import Stopwatch, get_logger
from ragrouter.models import Query, RagResponse, Strategy
from ragrouter.retrieval.base import (
    StrategyConfig,
    VectorSearcher,
    build_response,
    dedupe_results,
    rank_results,
    result_from_chunk,
    select_granularity,
)


class FederatedRetriever:
    """Search every selected shard concurrently and merge by score."""

    strategy = Strategy.FEDERATED
    name = "FederatedRetriever"
    uses_routing = False

    def __init__(self, provider: EmbeddingProvider, shards: Sequence[VectorStore]) -> None:
        if not shards:
            raise ConfigurationError("Federated retrieval needs at least one shard")
        self._shards = tuple(shards)
        self._searcher = VectorSearcher(provider, self._shards[0])
        self._logger = get_logger("retrieval.federated")

    @property
    def shard_names(self) -> Sequence[str]:
        return tuple(shard.name for shard in self._shards)

    def select_shards(self, config: StrategyConfig) -> Sequence[VectorStore]:
        if config.shard_selection != "all":
            self._logger.warning(
                "retrieval.federated.selection_unsupported",
                shard_selection=config.shard_selection,
                using="all",
            )
        return self._shards[: max(config.max_shards, 1)]

    async def retrieve(self, query: Query, config: StrategyConfig) -> RagResponse:
        total = Stopwatch()
        vector, embedding_ms = await self._searcher.embed_query(query.text)

        granularity = select_granularity(query)
        shards = self.select_shards(config)
        search_watch = Stopwatch()
        per_shard = await asyncio.gather(
            *(
                self._searcher.search(
                    vector,
                    top_k=config.top_k,
                    score_threshold=config.score_threshold,
                    granularity=granularity,
                    filters=query.filters,
                    store=shard,
                )
                for shard in shards
            )
        )
        retrieval_ms = search_watch.elapsed_ms()

        results = []
        candidates = 0
        for shard, hits in zip(shards, per_shard):
            candidates += len(hits)
            results.extend(
                result_from_chunk(hit.chunk, hit.score, self.strategy, dense_score=hit.score, metadata={"shard": shard.name})
                for hit in hits
            )
        ranked = rank_results(dedupe_results(results), config.top_k)

        shard_names = [shard.name for shard in shards]
        response = build_response(
            query,
            config,
            self.strategy,
            ranked,
            total=total,
            embedding_ms=embedding_ms,
            retrieval_ms=retrieval_ms,
            granularity=granularity,
            method=f"Merged dense search results from {len(shards)} shards.",
            reasoning=f"Federated search over shards: {', '.join(shard_names)}",
            index_used="federated",
            candidates=candidates,
            store_routing=shard_names,
        )
        self._logger.info(
            "retrieval.federated.complete",
            query_id=query.query_id,
            shards=shard_names,
            candidate_count=candidates,
            result_count=len(ranked),
        )
        return response

    async def health_check(self) -> bool:
        checks = await asyncio.gather(*(asyncio.to_thread(shard.ping) for shard in self._shards))
        return all(checks)
