"""Hybrid dense + BM25 retriever."""

from __future__ import annotations

import re
from typing import Sequence

from rank_bm25 import BM25Okapi

from ragrouter.embeddings.service import EmbeddingProvider
from ragrouter.embeddings.store import VectorStore
from ragrouter.metrics.observability import Stopwatch, get_logger
from ragrouter.models import Query, RagResponse, ScoredChunk, Strategy
from ragrouter.retrieval.base import (
    StrategyConfig,
    VectorSearcher,
    build_response,
    clamp_score,
    rank_results,
    result_from_chunk,
    select_granularity,
)

_TOKEN_RE = re.compile(r"\w+")


def tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall(text.lower())


def bm25_scores(query: str, candidates: Sequence[ScoredChunk]) -> list[float]:
    """BM25 over the candidate pool, scaled so the best match scores 1.0."""

    corpus = [tokenize(item.chunk.text) or [""] for item in candidates]
    query_tokens = tokenize(query)
    if not corpus or not query_tokens:
        return [0.0] * len(candidates)
    raw = BM25Okapi(corpus).get_scores(query_tokens)
    positive = [max(float(score), 0.0) for score in raw]
    top = max(positive, default=0.0)
    if top <= 0.0:
        return [0.0] * len(candidates)
    return [score / top for score in positive]


class HybridRetriever:
    """Blend dense similarity with BM25 keyword scores over a widened candidate pool."""

    strategy = Strategy.HYBRID
    name = "HybridRetriever"
    uses_routing = False

    def __init__(self, provider: EmbeddingProvider, store: VectorStore) -> None:
        self._searcher = VectorSearcher(provider, store)
        self._logger = get_logger("retrieval.hybrid")

    async def retrieve(self, query: Query, config: StrategyConfig) -> RagResponse:
        total = Stopwatch()
        vector, embedding_ms = await self._searcher.embed_query(query.text)

        granularity = select_granularity(query)
        search_watch = Stopwatch()
        # Sparse scoring can promote candidates below the dense threshold.
        candidates = await self._searcher.search(
            vector,
            top_k=max(config.initial_k, config.top_k),
            score_threshold=0.0,
            granularity=granularity,
            filters=query.filters,
        )
        retrieval_ms = search_watch.elapsed_ms()

        dense_weight, sparse_weight = _normalise_weights(config.dense_weight, config.sparse_weight)
        sparse = bm25_scores(query.text, candidates)
        results = []
        for hit, sparse_score in zip(candidates, sparse):
            dense_score = clamp_score(hit.score)
            hybrid = clamp_score(dense_weight * dense_score + sparse_weight * sparse_score)
            if hybrid <= config.score_threshold:
                continue
            results.append(
                result_from_chunk(
                    hit.chunk,
                    hybrid,
                    self.strategy,
                    dense_score=dense_score,
                    sparse_score=sparse_score,
                    hybrid_score=hybrid,
                )
            )
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
            method=(
                f"Blended dense similarity ({dense_weight:.2f}) with BM25 keyword scores ({sparse_weight:.2f})."
            ),
            reasoning="Hybrid dense and sparse retrieval over a widened candidate pool",
            index_used=f"{self._searcher.store.name}:hnsw_cosine+bm25",
            candidates=len(candidates),
            hybrid_weights={"dense": dense_weight, "sparse": sparse_weight},
        )
        self._logger.info(
            "retrieval.hybrid.complete",
            query_id=query.query_id,
            candidate_count=len(candidates),
            result_count=len(ranked),
        )
        return response

    async def health_check(self) -> bool:
        return await self._searcher.ping()


def _normalise_weights(dense: float, sparse: float) -> tuple[float, float]:
    dense = max(dense, 0.0)
    sparse = max(sparse, 0.0)
    total = dense + sparse
    if total <= 0.0:
        return 1.0, 0.0
    return dense / total, sparse / total
