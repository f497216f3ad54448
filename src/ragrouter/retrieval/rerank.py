"""Rerankers and the retrievers built on them."""

from __future__ import annotations

import asyncio
import math
import threading
from typing import Any, Protocol, Sequence

from ragrouter.embeddings.service import EmbeddingProvider
from ragrouter.embeddings.store import VectorStore
from ragrouter.errors import ProviderError
from ragrouter.metrics.observability import Stopwatch, get_logger
from ragrouter.models import Query, RagResponse, Strategy
from ragrouter.retrieval.base import (
    DEFAULT_CROSS_ENCODER,
    StrategyConfig,
    VectorSearcher,
    build_response,
    clamp_score,
    rank_results,
    result_from_chunk,
    select_granularity,
)


class Reranker(Protocol):
    """Scores (query, passage) pairs on a [0, 1] scale."""

    @property
    def model_name(self) -> str:
        """Identifier reported in scoring details."""

    def score(self, query: str, passages: Sequence[str], base_scores: Sequence[float]) -> list[float]:
        """Return one relevance score per passage."""


class LexicalReranker:
    """Blend the first-stage score with query token overlap."""

    model_name = "lexical_overlap"

    def __init__(self, blend_weight: float = 0.35) -> None:
        self._weight = clamp_score(blend_weight)

    def score(self, query: str, passages: Sequence[str], base_scores: Sequence[float]) -> list[float]:
        tokens = set(query.lower().split())
        return [
            clamp_score((1.0 - self._weight) * base + self._weight * _token_overlap_score(tokens, passage))
            for passage, base in zip(passages, base_scores)
        ]


class CrossEncoderReranker:
    """sentence-transformers cross-encoder, loaded on first use."""

    def __init__(self, model_name: str = DEFAULT_CROSS_ENCODER, device: str | None = None) -> None:
        self._model_name = model_name
        self._device = device
        self._model: Any = None
        self._lock = threading.Lock()

    @property
    def model_name(self) -> str:
        return self._model_name

    def _ensure_model(self) -> Any:
        with self._lock:
            if self._model is None:
                try:
                    from sentence_transformers import CrossEncoder  # type: ignore

                    self._model = CrossEncoder(self._model_name, device=self._device)
                except Exception as exc:
                    raise ProviderError(f"Failed to load cross-encoder {self._model_name}") from exc
            return self._model

    def score(self, query: str, passages: Sequence[str], base_scores: Sequence[float]) -> list[float]:
        if not passages:
            return []
        model = self._ensure_model()
        try:
            logits = model.predict([(query, passage) for passage in passages])
        except Exception as exc:
            raise ProviderError("Cross-encoder scoring failed") from exc
        return [_sigmoid(float(logit)) for logit in logits]


class TwoStageRerankRetriever:
    """Dense candidate generation followed by pairwise reranking."""

    strategy = Strategy.TWO_STAGE_RERANK
    name = "TwoStageRerankRetriever"
    uses_routing = False

    def __init__(self, provider: EmbeddingProvider, store: VectorStore, reranker: Reranker) -> None:
        self._searcher = VectorSearcher(provider, store)
        self._reranker = reranker
        self._logger = get_logger("retrieval.rerank")

    async def retrieve(self, query: Query, config: StrategyConfig) -> RagResponse:
        total = Stopwatch()
        vector, embedding_ms = await self._searcher.embed_query(query.text)

        granularity = select_granularity(query)
        search_watch = Stopwatch()
        candidates = await self._searcher.search(
            vector,
            top_k=max(config.initial_k, config.top_k),
            score_threshold=config.score_threshold,
            granularity=granularity,
            filters=query.filters,
        )
        retrieval_ms = search_watch.elapsed_ms()

        pool = candidates[: max(config.rerank_k, config.top_k)]
        rerank_watch = Stopwatch()
        scores = await asyncio.to_thread(
            self._reranker.score,
            query.text,
            [hit.chunk.text for hit in pool],
            [hit.score for hit in pool],
        )
        reranking_ms = rerank_watch.elapsed_ms()

        results = [
            result_from_chunk(
                hit.chunk,
                rerank_score,
                self.strategy,
                dense_score=clamp_score(hit.score),
                rerank_score=clamp_score(rerank_score),
            )
            for hit, rerank_score in zip(pool, scores)
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
            method=f"Reranked {len(pool)} dense candidates with {self._reranker.model_name}.",
            reasoning=f"Two-stage retrieval: {len(candidates)} dense candidates reranked to top {config.top_k}",
            index_used=f"{self._searcher.store.name}:hnsw_cosine",
            candidates=len(candidates),
            reranking_ms=reranking_ms,
            reranking_model=self._reranker.model_name,
        )
        self._logger.info(
            "retrieval.rerank.complete",
            query_id=query.query_id,
            candidate_count=len(candidates),
            reranked_count=len(pool),
            reranking_ms=reranking_ms,
        )
        return response

    async def health_check(self) -> bool:
        return await self._searcher.ping()


class AugmentedRerankingRetriever:
    """Expand each candidate with its neighbouring chunks, then rerank on the expanded text."""

    strategy = Strategy.AUGMENTED_RERANKING
    name = "AugmentedRerankingRetriever"
    uses_routing = False

    def __init__(self, provider: EmbeddingProvider, store: VectorStore, reranker: Reranker) -> None:
        self._searcher = VectorSearcher(provider, store)
        self._reranker = reranker
        self._logger = get_logger("retrieval.augmented")

    async def retrieve(self, query: Query, config: StrategyConfig) -> RagResponse:
        total = Stopwatch()
        vector, embedding_ms = await self._searcher.embed_query(query.text)

        granularity = select_granularity(query)
        search_watch = Stopwatch()
        candidates = await self._searcher.search(
            vector,
            top_k=max(config.initial_k, config.top_k),
            score_threshold=config.score_threshold,
            granularity=granularity,
            filters=query.filters,
        )
        pool = candidates[: max(config.rerank_k, config.top_k)]
        radius = max(config.expansion_radius, 0)
        expanded = list(
            await asyncio.gather(*(self._searcher.expand_context(hit.chunk, radius) for hit in pool))
        )
        retrieval_ms = search_watch.elapsed_ms()

        rerank_watch = Stopwatch()
        scores = await asyncio.to_thread(
            self._reranker.score,
            query.text,
            expanded,
            [hit.score for hit in pool],
        )
        reranking_ms = rerank_watch.elapsed_ms()

        results = [
            result_from_chunk(
                hit.chunk,
                rerank_score,
                self.strategy,
                dense_score=clamp_score(hit.score),
                rerank_score=clamp_score(rerank_score),
                expanded_context=context,
                metadata={"expansion_strategy": config.expansion_strategy, "expansion_radius": radius},
            )
            for hit, context, rerank_score in zip(pool, expanded, scores)
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
            method=(
                f"Expanded candidates by {radius} neighbouring chunks and reranked with "
                f"{self._reranker.model_name}."
            ),
            reasoning=f"Context expansion ({config.expansion_strategy}, radius {radius}) before reranking",
            index_used=f"{self._searcher.store.name}:hnsw_cosine",
            candidates=len(candidates),
            reranking_ms=reranking_ms,
            reranking_model=self._reranker.model_name,
        )
        self._logger.info(
            "retrieval.augmented.complete",
            query_id=query.query_id,
            candidate_count=len(candidates),
            expansion_radius=radius,
        )
        return response

    async def health_check(self) -> bool:
        return await self._searcher.ping()


def _token_overlap_score(query_tokens: set[str], text: str) -> float:
    tokens = set(text.lower().split())
    if not tokens:
        return 0.0
    overlap = len(query_tokens.intersection(tokens))
    return overlap / max(len(query_tokens), 1)


def _sigmoid(value: float) -> float:
    if value >= 0:
        return 1.0 / (1.0 + math.exp(-value))
    exp = math.exp(value)
    return exp / (1.0 + exp)
