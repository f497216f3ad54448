"""Retriever interface, strategy configuration and shared scoring helpers."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Mapping, Protocol, Sequence

from ragrouter.analysis import classify_difficulty
from ragrouter.config import Settings
from ragrouter.embeddings.service import EmbeddingProvider, Vector
from ragrouter.embeddings.store import VectorStore
from ragrouter.errors import ConfigurationError, EmbeddingError, RagError, StoreError
from ragrouter.metrics.observability import PipelineMetrics, Stopwatch
from ragrouter.models import (
    ChunkGranularity,
    DebugInfo,
    DocumentChunk,
    Query,
    QueryFilters,
    RagResponse,
    RetrievalResult,
    ScoredChunk,
    ScoringDetails,
    Strategy,
    TimingBreakdown,
)
from ragrouter.routing.router import RoutingDecision

DEFAULT_CROSS_ENCODER = "cross-encoder/ms-marco-MiniLM-L-6-v2"


@dataclass(frozen=True)
class StrategyConfig:
    """Read-only tunables for one strategy. Per-call values come from :meth:`merge`."""

    strategy: Strategy
    top_k: int = 5
    score_threshold: float = 0.5
    # hybrid
    dense_weight: float = 0.7
    sparse_weight: float = 0.3
    # two-stage reranking
    initial_k: int = 20
    rerank_k: int = 5
    cross_encoder_model: str = DEFAULT_CROSS_ENCODER
    # fusion
    fusion_method: Literal["weighted", "attention", "voting"] = "weighted"
    max_passages: int = 10
    # context expansion
    expansion_radius: int = 2
    expansion_strategy: Literal["parent_child", "sliding_window", "semantic_neighbors"] = "parent_child"
    # federated
    shard_selection: Literal["all", "quality_based", "domain_based", "adaptive"] = "all"
    max_shards: int = 5
    # graph
    max_hops: int = 3
    relationship_weights: Mapping[str, float] = field(
        default_factory=lambda: {"related_to": 1.0, "part_of": 0.8}
    )
    # adaptive
    adaptive_thresholds: Mapping[str, float] = field(
        default_factory=lambda: {"easy": 0.8, "medium": 0.6, "hard": 0.4}
    )
    timeout_seconds: float = 30.0
    routing: RoutingDecision | None = None

    def merge(self, **overrides: Any) -> "StrategyConfig":
        known = {item.name for item in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ConfigurationError(
                f"Unknown config fields for {self.strategy.value}: {', '.join(unknown)}",
                strategy=self.strategy.value,
            )
        changes = {key: value for key, value in overrides.items() if value is not None}
        if "strategy" in changes:
            changes["strategy"] = Strategy.parse(changes["strategy"])
        return replace(self, **changes)


_STRATEGY_DEFAULTS: Dict[Strategy, Dict[str, Any]] = {
    Strategy.RETRIEVE_READ: {},
    Strategy.HYBRID: {"dense_weight": 0.7, "sparse_weight": 0.3},
    Strategy.TWO_STAGE_RERANK: {"initial_k": 20, "rerank_k": 5},
    Strategy.AUGMENTED_RERANKING: {"expansion_radius": 2, "expansion_strategy": "parent_child"},
    Strategy.FEDERATED: {"shard_selection": "all", "max_shards": 5},
    Strategy.GRAPH_RAG: {"max_hops": 3},
    Strategy.ADAPTIVE: {},
}


def default_strategy_configs(settings: Settings) -> Dict[Strategy, StrategyConfig]:
    """Build per-strategy templates from settings, applying ``strategy_overrides``."""

    configs: Dict[Strategy, StrategyConfig] = {}
    for strategy, extra in _STRATEGY_DEFAULTS.items():
        configs[strategy] = StrategyConfig(
            strategy=strategy,
            top_k=settings.default_top_k,
            score_threshold=settings.score_threshold,
            cross_encoder_model=settings.cross_encoder_model,
            timeout_seconds=settings.retrieval_timeout_seconds,
            **extra,
        )
    for name, overrides in settings.strategy_overrides.items():
        strategy = Strategy.parse(name)
        if strategy not in configs:
            raise ConfigurationError(f"No configurable strategy named {name!r}")
        configs[strategy] = configs[strategy].merge(**dict(overrides))
    return configs


class Retriever(Protocol):
    """One retrieval algorithm. Implementations hold no per-query state."""

    strategy: Strategy
    name: str
    # Store-aware retrievers receive a routing decision in ``config.routing``.
    uses_routing: bool

    async def retrieve(self, query: Query, config: StrategyConfig) -> RagResponse:
        """Execute the strategy and return a complete, ranked response."""

    async def health_check(self) -> bool:
        """Return True when the retriever's backends answer."""


def select_granularity(query: Query) -> ChunkGranularity:
    if query.granularity == "fine":
        return "fine"
    if query.granularity in (None, "adaptive") and query.type == "analytical":
        return "fine"
    return "coarse"


def wants_expanded_context(query: Query) -> bool:
    return query.granularity == "adaptive" or query.include_metadata


def clamp_score(score: float) -> float:
    if score < 0.0:
        return 0.0
    if score > 1.0:
        return 1.0
    return float(score)


def compute_confidence(results: Sequence[RetrievalResult]) -> float:
    if not results:
        return 0.0
    scores = [item.score for item in results]
    mean = sum(scores) / len(scores)
    return round(max(scores) * 0.7 + mean * 0.3, 2)


def compute_coverage(results: Sequence[RetrievalResult], top_k: int) -> float:
    if not results:
        return 0.0
    mean = sum(item.score for item in results) / len(results)
    return round(min(len(results) / max(top_k, 1), 1.0) * mean, 2)


def rank_results(results: Sequence[RetrievalResult], top_k: int | None = None) -> list[RetrievalResult]:
    """Sort by score (stable), truncate and assign contiguous 1-based ranks."""

    ordered = sorted(results, key=lambda item: item.score, reverse=True)
    if top_k is not None:
        ordered = ordered[:top_k]
    return [replace(item, rank=index) for index, item in enumerate(ordered, start=1)]


def dedupe_results(results: Sequence[RetrievalResult]) -> list[RetrievalResult]:
    """Keep the highest-scoring instance per (document_id, chunk_id), first seen wins ties."""

    best: Dict[tuple[str, str | None], RetrievalResult] = {}
    for item in results:
        current = best.get(item.fusion_key)
        if current is None or item.score > current.score:
            best[item.fusion_key] = item
    return list(best.values())


def result_from_chunk(
    chunk: DocumentChunk,
    score: float,
    strategy: Strategy,
    **fields_: Any,
) -> RetrievalResult:
    doc = chunk.document_metadata
    metadata: Dict[str, Any] = {
        **chunk.chunk_metadata,
        "document_title": doc.title,
        "retrieval_strategy": strategy.value,
        "retrieved_at": datetime.now(timezone.utc).isoformat(),
    }
    for key in ("source", "content_type", "language"):
        value = getattr(doc, key)
        if value is not None:
            metadata[key] = value
    metadata.update(fields_.pop("metadata", {}))
    return RetrievalResult(
        id=chunk.chunk_id,
        content=chunk.text,
        score=clamp_score(score),
        rank=0,
        document_id=doc.document_id,
        chunk_id=chunk.chunk_id,
        metadata=metadata,
        chunk_granularity=chunk.granularity,
        **fields_,
    )


def build_explanation(results: Sequence[RetrievalResult], granularity: str, method: str) -> str:
    if not results:
        return "No relevant documents found for the query."
    top = results[0].score
    return (
        f"Retrieved {len(results)} documents using {granularity} granularity. "
        f"Top result has similarity score of {top * 100:.1f}%. "
        f"{method}"
    )


def build_response(
    query: Query,
    config: StrategyConfig,
    strategy: Strategy,
    results: Sequence[RetrievalResult],
    *,
    total: Stopwatch,
    embedding_ms: float,
    retrieval_ms: float,
    granularity: str,
    method: str,
    reasoning: str,
    index_used: str,
    candidates: int,
    store_routing: Sequence[str] = ("primary",),
    reranking_ms: float | None = None,
    reranking_model: str | None = None,
    hybrid_weights: Mapping[str, float] | None = None,
) -> RagResponse:
    """Assemble a response from ranked results and record retrieval metrics."""

    total_ms = total.elapsed_ms()
    post_ms = max(total_ms - embedding_ms - retrieval_ms - (reranking_ms or 0.0), 0.0)
    PipelineMetrics.observe_retrieval(
        strategy.value,
        total_ms / 1000,
        len(results),
        (item.score for item in results),
    )
    return RagResponse(
        query_id=query.query_id,
        results=tuple(results),
        total_latency=total_ms,
        embedding_latency=embedding_ms,
        retrieval_latency=retrieval_ms,
        reranking_latency=reranking_ms,
        strategy=strategy,
        top_k=config.top_k,
        granularity=granularity,
        confidence=compute_confidence(results),
        coverage=compute_coverage(results, config.top_k),
        explanation=build_explanation(results, granularity, method),
        debug_info=DebugInfo(
            query_difficulty=query.difficulty or classify_difficulty(query.text),
            strategy_reasoning=reasoning,
            store_routing=tuple(store_routing),
            index_used=index_used,
            candidates_retrieved=candidates,
            reranked=reranking_ms is not None,
            fallback_used=False,
            timing=TimingBreakdown(
                embedding=embedding_ms,
                retrieval=retrieval_ms,
                post_processing=post_ms,
                reranking=reranking_ms,
            ),
            scoring=ScoringDetails(
                normalized_scores=True,
                hybrid_weights=dict(hybrid_weights) if hybrid_weights else None,
                reranking_model=reranking_model,
            ),
        ),
    )


class VectorSearcher:
    """Async facade over a blocking embedding provider and vector store."""

    def __init__(self, provider: EmbeddingProvider, store: VectorStore) -> None:
        self._provider = provider
        self._store = store

    @property
    def store(self) -> VectorStore:
        return self._store

    @property
    def provider(self) -> EmbeddingProvider:
        return self._provider

    async def embed_query(self, text: str) -> tuple[Vector, float]:
        watch = Stopwatch()
        try:
            vector = await asyncio.to_thread(self._provider.embed_query, text)
        except RagError:
            raise
        except Exception as exc:
            raise EmbeddingError("Embedding provider failed for query") from exc
        elapsed = watch.elapsed_ms()
        PipelineMetrics.observe_embedding(elapsed / 1000)
        return vector, elapsed

    async def search(
        self,
        vector: Sequence[float],
        *,
        top_k: int,
        score_threshold: float,
        granularity: ChunkGranularity | None,
        filters: QueryFilters | None,
        store: VectorStore | None = None,
    ) -> list[ScoredChunk]:
        target = store or self._store
        try:
            hits = await asyncio.to_thread(
                target.search,
                vector,
                top_k=top_k,
                score_threshold=score_threshold,
                granularity=granularity,
                filters=filters,
            )
        except RagError:
            raise
        except Exception as exc:
            raise StoreError(f"Vector search failed on {getattr(target, 'name', 'store')}") from exc
        return list(hits)

    async def expand_context(self, chunk: DocumentChunk, radius: int = 1) -> str:
        try:
            neighbours = await asyncio.to_thread(
                self._store.neighbors,
                chunk.document_metadata.document_id,
                chunk.granularity,
                chunk.chunk_index,
                radius,
            )
        except RagError:
            raise
        except Exception as exc:
            raise StoreError(f"Neighbour lookup failed for {chunk.chunk_id}") from exc
        if not neighbours:
            return chunk.text
        return "\n\n".join(item.text for item in neighbours)

    async def ping(self) -> bool:
        return await asyncio.to_thread(self._store.ping)
