from __future__ import annotations

import pytest

from ragrouter.errors import PartialFailure, StoreError, ValidationError
from ragrouter.fusion import EnsembleFuser
from ragrouter.models import DebugInfo, RagResponse, RetrievalResult, Strategy


def _result(doc_id: str, score: float, rank: int = 1, chunk: str | None = None) -> RetrievalResult:
    return RetrievalResult(
        id=chunk or f"{doc_id}-coarse-0",
        content=f"content of {doc_id}",
        score=score,
        rank=rank,
        document_id=doc_id,
        chunk_id=chunk or f"{doc_id}-coarse-0",
    )


def _response(
    strategy: Strategy,
    results: list[RetrievalResult],
    *,
    latency: float = 10.0,
    confidence: float = 0.5,
    stores: tuple[str, ...] = ("primary",),
    fallback: bool = False,
) -> RagResponse:
    return RagResponse(
        query_id="q-1",
        results=tuple(results),
        total_latency=latency,
        embedding_latency=latency / 4,
        retrieval_latency=latency / 2,
        strategy=strategy,
        top_k=5,
        granularity="coarse",
        confidence=confidence,
        coverage=confidence / 2,
        explanation="",
        debug_info=DebugInfo(
            query_difficulty="easy",
            strategy_reasoning="stub",
            store_routing=stores,
            candidates_retrieved=len(results),
            fallback_used=fallback,
        ),
    )


def test_overlapping_result_kept_once_with_max_score():
    dense = _response(Strategy.RETRIEVE_READ, [_result("x", 0.7, 1), _result("a", 0.6, 2)])
    hybrid = _response(Strategy.HYBRID, [_result("x", 0.9, 1), _result("b", 0.5, 2)])

    fused = EnsembleFuser().fuse([dense, hybrid], top_k=5, granularity="coarse")

    assert fused.strategy is Strategy.ENSEMBLE
    assert [item.document_id for item in fused.results] == ["x", "a", "b"]
    assert fused.results[0].score == 0.9
    assert [item.rank for item in fused.results] == [1, 2, 3]
    assert fused.explanation.startswith("Ensemble of 2 strategies (retrieve_read, hybrid) fused by max.")
    assert fused.debug_info.index_used == "multiple"
    assert fused.debug_info.scoring.reranking_model == "ensemble_fusion"


@pytest.mark.parametrize("superset_first", [True, False])
def test_subset_fuses_to_superset(superset_first):
    superset = _response(
        Strategy.RETRIEVE_READ,
        [_result("a", 0.9, 1), _result("b", 0.7, 2), _result("c", 0.5, 3), _result("c", 0.4, 4, chunk="c-fine-1")],
    )
    subset = _response(Strategy.HYBRID, [_result("c", 0.8, 1), _result("b", 0.6, 2)])
    responses = [superset, subset] if superset_first else [subset, superset]

    fused = EnsembleFuser().fuse(responses, top_k=10, granularity="coarse")

    keys = [item.fusion_key for item in fused.results]
    assert len(keys) == len(set(keys))
    assert set(keys) == {item.fusion_key for item in superset.results}
    assert [item.rank for item in fused.results] == [1, 2, 3, 4]
    assert [(item.document_id, item.score) for item in fused.results] == [
        ("a", 0.9),
        ("c", 0.8),
        ("b", 0.7),
        ("c", 0.4),
    ]


def test_single_response_fusion_keeps_results():
    only = _response(Strategy.HYBRID, [_result("a", 0.8, 1), _result("b", 0.4, 2)])
    fused = EnsembleFuser().fuse([only], top_k=5, granularity="coarse")
    assert [(item.document_id, item.score, item.rank) for item in fused.results] == [
        ("a", 0.8, 1),
        ("b", 0.4, 2),
    ]


def test_truncates_and_aggregates_metrics():
    slow = _response(
        Strategy.RETRIEVE_READ,
        [_result(f"d{i}", 0.9 - i * 0.1, i + 1) for i in range(4)],
        latency=40.0,
        confidence=0.8,
        stores=("vector",),
    )
    fast = _response(
        Strategy.HYBRID,
        [_result(f"e{i}", 0.85 - i * 0.1, i + 1) for i in range(4)],
        latency=10.0,
        confidence=0.4,
        stores=("vector", "graph"),
        fallback=True,
    )

    fused = EnsembleFuser().fuse([slow, fast], top_k=3, granularity="coarse")

    assert len(fused.results) == 3
    assert fused.top_k == 3
    assert fused.total_latency == 40.0
    assert fused.retrieval_latency == 20.0
    assert fused.confidence == 0.6
    assert tuple(fused.debug_info.store_routing) == ("vector", "graph")
    assert fused.debug_info.fallback_used is True
    assert fused.debug_info.candidates_retrieved == 8


def test_rrf_rewards_agreement():
    first = _response(Strategy.RETRIEVE_READ, [_result("x", 0.4, 1), _result("a", 0.9, 2)])
    second = _response(Strategy.HYBRID, [_result("x", 0.3, 1), _result("b", 0.8, 2)])

    fused = EnsembleFuser().fuse([first, second], top_k=5, granularity="coarse", method="rrf")

    assert fused.results[0].document_id == "x"
    assert fused.results[0].score == pytest.approx(1.0)
    assert all(0.0 <= item.score <= 1.0 for item in fused.results)
    assert "fused by rrf" in fused.explanation


def test_rejects_empty_input_and_unknown_method():
    fuser = EnsembleFuser()
    with pytest.raises(ValidationError):
        fuser.fuse([], top_k=5, granularity="coarse")
    with pytest.raises(ValidationError):
        fuser.fuse([_response(Strategy.HYBRID, [])], top_k=5, granularity="coarse", method="borda")


def test_partial_failures_reported_in_debug_info():
    ok = _response(Strategy.RETRIEVE_READ, [_result("a", 0.7)])
    failure = PartialFailure.from_exception("hybrid", StoreError("index offline"))

    fused = EnsembleFuser().fuse([ok], top_k=5, granularity="coarse", partial_failures=[failure])

    assert fused.debug_info.partial_failures == (
        {"strategy": "hybrid", "error_type": "StoreError", "message": "index offline"},
    )
