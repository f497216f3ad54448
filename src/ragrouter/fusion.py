"""Fusion of several strategy responses into one ensemble response."""

from __future__ import annotations

from dataclasses import replace
from typing import Dict, Literal, Sequence

from ragrouter.errors import PartialFailure, ValidationError
from ragrouter.metrics.observability import get_logger
from ragrouter.models import (
    DebugInfo,
    RagResponse,
    RetrievalResult,
    ScoringDetails,
    Strategy,
    TimingBreakdown,
)
from ragrouter.retrieval.base import rank_results

FusionMethod = Literal["max", "rrf"]
RRF_K = 60
FUSION_METHODS: tuple[FusionMethod, ...] = ("max", "rrf")


def check_fusion_method(method: str) -> None:
    if method not in FUSION_METHODS:
        raise ValidationError(f"Unknown fusion method: {method}", strategy=Strategy.ENSEMBLE.value)


class EnsembleFuser:
    """Merge responses by (document_id, chunk_id), keeping the best evidence per key."""

    def __init__(self, rrf_k: int = RRF_K) -> None:
        self._rrf_k = rrf_k
        self._logger = get_logger("fusion")

    def fuse(
        self,
        responses: Sequence[RagResponse],
        top_k: int,
        granularity: str,
        *,
        method: FusionMethod = "max",
        partial_failures: Sequence[PartialFailure] = (),
    ) -> RagResponse:
        if not responses:
            raise ValidationError("Ensemble fusion needs at least one response", strategy=Strategy.ENSEMBLE.value)
        check_fusion_method(method)
        if method == "rrf":
            merged = self._reciprocal_rank(responses)
        else:
            merged = self._max_score(responses)
        ranked = rank_results(merged, top_k)

        strategies = [response.strategy.value for response in responses]
        count = len(responses)
        total = max(response.total_latency for response in responses)
        embedding = max(response.embedding_latency for response in responses)
        retrieval = max(response.retrieval_latency for response in responses)
        reranking_values = [r.reranking_latency for r in responses if r.reranking_latency is not None]
        reranking = max(reranking_values) if reranking_values else None
        first = responses[0]

        fused = RagResponse(
            query_id=first.query_id,
            results=tuple(ranked),
            total_latency=total,
            embedding_latency=embedding,
            retrieval_latency=retrieval,
            reranking_latency=reranking,
            strategy=Strategy.ENSEMBLE,
            top_k=top_k,
            granularity=granularity,
            confidence=round(sum(r.confidence for r in responses) / count, 2),
            coverage=round(sum(r.coverage for r in responses) / count, 2),
            explanation=(
                f"Ensemble of {count} strategies ({', '.join(strategies)}) fused by {method}. "
                f"Returned {len(ranked)} results."
            ),
            debug_info=DebugInfo(
                query_difficulty=first.debug_info.query_difficulty,
                strategy_reasoning=f"Ensemble fusion of {count} strategies",
                store_routing=tuple(
                    dict.fromkeys(store for r in responses for store in r.debug_info.store_routing)
                ),
                index_used="multiple",
                candidates_retrieved=sum(r.debug_info.candidates_retrieved for r in responses),
                reranked=any(r.debug_info.reranked for r in responses),
                fallback_used=any(r.debug_info.fallback_used for r in responses),
                timing=TimingBreakdown(
                    embedding=embedding,
                    retrieval=retrieval,
                    post_processing=0.0,
                    reranking=reranking,
                ),
                scoring=ScoringDetails(normalized_scores=True, reranking_model="ensemble_fusion"),
                partial_failures=tuple(failure.to_dict() for failure in partial_failures),
            ),
        )
        self._logger.info(
            "fusion.complete",
            query_id=fused.query_id,
            method=method,
            strategies=strategies,
            result_count=len(ranked),
            partial_failures=len(partial_failures),
        )
        return fused

    @staticmethod
    def _max_score(responses: Sequence[RagResponse]) -> list[RetrievalResult]:
        best: Dict[tuple[str, str | None], RetrievalResult] = {}
        for response in responses:
            for item in response.results:
                current = best.get(item.fusion_key)
                if current is None or item.score > current.score:
                    best[item.fusion_key] = item
        return list(best.values())

    def _reciprocal_rank(self, responses: Sequence[RagResponse]) -> list[RetrievalResult]:
        totals: Dict[tuple[str, str | None], float] = {}
        best: Dict[tuple[str, str | None], RetrievalResult] = {}
        for response in responses:
            for position, item in enumerate(response.results, start=1):
                key = item.fusion_key
                totals[key] = totals.get(key, 0.0) + 1.0 / (self._rrf_k + position)
                current = best.get(key)
                if current is None or item.score > current.score:
                    best[key] = item
        # Rank 1 in every input scores exactly 1.0
        ceiling = len(responses) / (self._rrf_k + 1)
        return [replace(item, score=min(totals[key] / ceiling, 1.0)) for key, item in best.items()]


__all__ = ["EnsembleFuser", "FUSION_METHODS", "FusionMethod", "RRF_K", "check_fusion_method"]
