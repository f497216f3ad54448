from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from uuid import uuid4

import pytest

from ragrouter.config import get_settings
from ragrouter.errors import (
    ConfigurationError,
    EnsembleError,
    ProviderError,
    RetrievalTimeoutError,
    StoreError,
    ValidationError,
)
from ragrouter.metrics.analytics import InMemoryAnalyticsSink
from ragrouter.metrics.observability import Stopwatch
from ragrouter.models import Query, QueryFilters, RetrievalResult, Strategy
from ragrouter.retrieval import AdaptiveRetriever
from ragrouter.retrieval.base import build_response, rank_results
from ragrouter.routing import DatabaseRouter, StoreKind
from ragrouter.services import BranchOutcome, RagService, build_rag_service

SCENARIO_B = (
    "Analyze and compare the architectural trade-offs of microservices versus monoliths across "
    "twenty-five different dimensions of scalability, cost, and team structure"
)


class StubRetriever:
    def __init__(
        self,
        strategy: Strategy,
        hits: list[tuple[str, float]] | None = None,
        *,
        error: Exception | None = None,
        delay: float = 0.0,
        uses_routing: bool = False,
    ) -> None:
        self.strategy = strategy
        self.name = f"Stub[{strategy.value}]"
        self.uses_routing = uses_routing
        self.hits = hits if hits is not None else [("d1", 0.8)]
        self.error = error
        self.delay = delay
        self.calls: list[tuple[Query, object]] = []

    async def retrieve(self, query, config):
        self.calls.append((query, config))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        results = [
            RetrievalResult(
                id=f"{doc_id}-coarse-0",
                content=f"text of {doc_id}",
                score=score,
                rank=0,
                document_id=doc_id,
                chunk_id=f"{doc_id}-coarse-0",
            )
            for doc_id, score in self.hits
        ]
        return build_response(
            query,
            config,
            self.strategy,
            rank_results(results, config.top_k),
            total=Stopwatch(),
            embedding_ms=1.0,
            retrieval_ms=2.0,
            granularity="coarse",
            method="Stub retrieval.",
            reasoning=f"{self.strategy.value} stub",
            index_used="stub",
            candidates=len(results),
        )

    async def health_check(self):
        return self.error is None


def _service(settings, *retrievers: StubRetriever, **kwargs) -> RagService:
    return RagService({retriever.strategy: retriever for retriever in retrievers}, settings=settings, **kwargs)


async def test_simple_query_uses_dense_retrieval(settings):
    dense = StubRetriever(Strategy.RETRIEVE_READ)
    rerank = StubRetriever(Strategy.TWO_STAGE_RERANK)
    service = _service(settings, dense, rerank)

    response = await service.retrieve(Query(text="What is machine learning?"))

    assert response.strategy is Strategy.RETRIEVE_READ
    assert response.debug_info.query_difficulty == "easy"
    assert response.debug_info.fallback_used is False
    assert len(dense.calls) == 1
    assert rerank.calls == []
    routed_query, config = dense.calls[0]
    assert routed_query.type == "factual"
    assert config.top_k == settings.default_top_k


async def test_hard_analytical_query_uses_reranking(settings):
    dense = StubRetriever(Strategy.RETRIEVE_READ)
    rerank = StubRetriever(Strategy.TWO_STAGE_RERANK)
    service = _service(settings, dense, rerank)

    response = await service.retrieve(Query(text=SCENARIO_B))

    assert response.strategy is Strategy.TWO_STAGE_RERANK
    assert response.debug_info.query_difficulty == "hard"
    assert dense.calls == []


async def test_unregistered_suggestion_uses_default_strategy(settings):
    dense = StubRetriever(Strategy.RETRIEVE_READ)
    service = _service(settings, dense)

    response = await service.retrieve(Query(text=SCENARIO_B))

    assert response.strategy is Strategy.RETRIEVE_READ
    assert len(dense.calls) == 1


async def test_explicit_strategy_skips_selection(settings):
    dense = StubRetriever(Strategy.RETRIEVE_READ)
    hybrid = StubRetriever(Strategy.HYBRID)
    service = _service(settings, dense, hybrid)

    response = await service.retrieve(Query(text="What is machine learning?", strategy=Strategy.HYBRID))

    assert response.strategy is Strategy.HYBRID
    assert dense.calls == []


@pytest.mark.parametrize("error", [StoreError("index offline"), RuntimeError("socket closed")])
async def test_provider_failure_falls_back_once(settings, error):
    dense = StubRetriever(Strategy.RETRIEVE_READ, [("d2", 0.7)])
    hybrid = StubRetriever(Strategy.HYBRID, error=error)
    service = _service(settings, dense, hybrid)

    response = await service.retrieve_with_strategy(Query(text="solar power"), Strategy.HYBRID)

    assert response.strategy is Strategy.RETRIEVE_READ
    assert response.debug_info.fallback_used is True
    assert response.debug_info.strategy_reasoning.startswith("Fell back from hybrid after")
    assert [item.document_id for item in response.results] == ["d2"]
    assert len(hybrid.calls) == 1
    assert len(dense.calls) == 1
    assert dense.calls[0][0].strategy is Strategy.RETRIEVE_READ


async def test_configuration_error_is_not_retried(settings):
    dense = StubRetriever(Strategy.RETRIEVE_READ)
    hybrid = StubRetriever(Strategy.HYBRID, error=ConfigurationError("missing graph store"))
    service = _service(settings, dense, hybrid)

    with pytest.raises(ConfigurationError):
        await service.retrieve_with_strategy(Query(text="solar power"), Strategy.HYBRID)
    assert dense.calls == []


async def test_dense_failure_propagates_without_fallback(settings):
    dense = StubRetriever(Strategy.RETRIEVE_READ, error=RuntimeError("model not loaded"))
    service = _service(settings, dense)

    with pytest.raises(ProviderError) as excinfo:
        await service.retrieve_with_strategy(Query(text="solar power"), Strategy.RETRIEVE_READ)

    assert excinfo.value.strategy == "retrieve_read"
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert len(dense.calls) == 1


async def test_failed_fallback_raises_fallback_error(settings):
    dense = StubRetriever(Strategy.RETRIEVE_READ, error=StoreError("dense down"))
    hybrid = StubRetriever(Strategy.HYBRID, error=StoreError("hybrid down"))
    service = _service(settings, dense, hybrid)

    with pytest.raises(StoreError, match="dense down"):
        await service.retrieve_with_strategy(Query(text="solar power"), Strategy.HYBRID)
    assert len(dense.calls) == 1


async def test_timeout_raises_typed_error(settings):
    dense = StubRetriever(Strategy.RETRIEVE_READ, delay=1.0)
    service = _service(settings, dense)

    with pytest.raises(RetrievalTimeoutError) as excinfo:
        await service.retrieve_with_strategy(
            Query(text="solar power"),
            Strategy.RETRIEVE_READ,
            {"timeout_seconds": 0.05},
        )
    assert excinfo.value.strategy == "retrieve_read"


async def test_timeout_on_secondary_strategy_falls_back(settings):
    dense = StubRetriever(Strategy.RETRIEVE_READ)
    hybrid = StubRetriever(Strategy.HYBRID, delay=1.0)
    service = _service(settings, dense, hybrid)

    response = await service.retrieve_with_strategy(
        Query(text="solar power"),
        Strategy.HYBRID,
        {"timeout_seconds": 0.05},
    )

    assert response.debug_info.fallback_used is True
    assert "RetrievalTimeoutError" in response.debug_info.strategy_reasoning


@pytest.mark.parametrize(
    "query",
    [
        Query(text=""),
        Query(text="   "),
        Query(text="solar", top_k=0),
        Query(
            text="solar",
            filters=QueryFilters(
                date_range=(datetime(2025, 1, 1, tzinfo=timezone.utc), datetime(2024, 1, 1, tzinfo=timezone.utc))
            ),
        ),
    ],
)
async def test_invalid_queries_rejected_before_io(settings, query):
    dense = StubRetriever(Strategy.RETRIEVE_READ)
    service = _service(settings, dense)

    with pytest.raises(ValidationError):
        await service.retrieve(query)
    with pytest.raises(ValidationError):
        await service.ensemble_retrieve(query, [Strategy.RETRIEVE_READ])
    assert dense.calls == []


async def test_top_k_clamped_to_maximum(settings):
    dense = StubRetriever(Strategy.RETRIEVE_READ)
    service = _service(settings, dense)

    await service.retrieve(Query(text="solar", top_k=500))

    routed_query, config = dense.calls[0]
    assert routed_query.top_k == settings.max_top_k
    assert config.top_k == settings.max_top_k


async def test_config_override_top_k_clamped_to_maximum(settings):
    dense = StubRetriever(Strategy.RETRIEVE_READ)
    hybrid = StubRetriever(Strategy.HYBRID)
    service = _service(settings, dense, hybrid)

    await service.retrieve_with_strategy(Query(text="solar"), Strategy.HYBRID, {"top_k": 500})
    assert hybrid.calls[0][1].top_k == settings.max_top_k

    await service.retrieve_with_strategy(Query(text="solar"), Strategy.HYBRID, {"top_k": 7})
    assert hybrid.calls[1][1].top_k == 7

    with pytest.raises(ValidationError):
        await service.retrieve_with_strategy(Query(text="solar"), Strategy.HYBRID, {"top_k": 0})
    assert len(hybrid.calls) == 2


async def test_unregistered_strategies_are_configuration_errors(settings):
    service = _service(settings, StubRetriever(Strategy.RETRIEVE_READ))

    with pytest.raises(ConfigurationError):
        await service.retrieve_with_strategy(Query(text="solar"), Strategy.FEDERATED)
    with pytest.raises(ConfigurationError):
        await service.retrieve_with_strategy(Query(text="solar"), "fancy")
    with pytest.raises(ConfigurationError):
        await service.adaptive_retrieve(Query(text="solar"))


def test_construction_validates_registry(settings):
    with pytest.raises(ConfigurationError):
        _service(settings, StubRetriever(Strategy.HYBRID))
    with pytest.raises(ConfigurationError):
        RagService(
            {Strategy.RETRIEVE_READ: StubRetriever(Strategy.RETRIEVE_READ), "ensemble": StubRetriever(Strategy.HYBRID)},
            settings=settings,
        )
    hybrid_default = get_settings({"environment": "test", "default_strategy": "hybrid"})
    with pytest.raises(ConfigurationError):
        _service(hybrid_default, StubRetriever(Strategy.RETRIEVE_READ))


async def test_ensemble_merges_overlapping_results(settings):
    dense = StubRetriever(Strategy.RETRIEVE_READ, [("x", 0.7), ("a", 0.6)])
    hybrid = StubRetriever(Strategy.HYBRID, [("x", 0.9), ("b", 0.5)])
    service = _service(settings, dense, hybrid)

    response = await service.ensemble_retrieve(Query(text="solar power"), [Strategy.RETRIEVE_READ, Strategy.HYBRID])

    assert response.strategy is Strategy.ENSEMBLE
    assert [item.document_id for item in response.results] == ["x", "a", "b"]
    assert response.results[0].score == 0.9
    assert response.granularity == "coarse"
    assert dense.calls[0][0].strategy is Strategy.RETRIEVE_READ
    assert hybrid.calls[0][0].strategy is Strategy.HYBRID


async def test_ensemble_reports_partial_failures(settings):
    dense = StubRetriever(Strategy.RETRIEVE_READ, [("a", 0.6)])
    hybrid = StubRetriever(Strategy.HYBRID, error=StoreError("index offline"))
    graph = StubRetriever(Strategy.GRAPH_RAG, error=ConfigurationError("no graph store"))
    service = _service(settings, dense, hybrid, graph)

    response = await service.ensemble_retrieve(
        Query(text="solar power"),
        ["retrieve_read", "hybrid", "graph_rag"],
        method="rrf",
    )

    assert [item.document_id for item in response.results] == ["a"]
    failures = {item["strategy"]: item["error_type"] for item in response.debug_info.partial_failures}
    assert failures == {"hybrid": "StoreError", "graph_rag": "ConfigurationError"}
    # ensemble branches never fall back
    assert len(dense.calls) == 1


async def test_ensemble_unknown_fusion_method_rejected_before_branches_run(settings):
    dense = StubRetriever(Strategy.RETRIEVE_READ)
    hybrid = StubRetriever(Strategy.HYBRID)
    service = _service(settings, dense, hybrid)

    with pytest.raises(ValidationError):
        await service.ensemble_retrieve(
            Query(text="solar power"),
            [Strategy.RETRIEVE_READ, Strategy.HYBRID],
            method="borda",
        )
    assert dense.calls == []
    assert hybrid.calls == []


async def test_ensemble_all_failures_raise(settings):
    first = StoreError("dense down")
    dense = StubRetriever(Strategy.RETRIEVE_READ, error=first)
    hybrid = StubRetriever(Strategy.HYBRID, error=RuntimeError("hybrid down"))
    service = _service(settings, dense, hybrid)

    with pytest.raises(EnsembleError) as excinfo:
        await service.ensemble_retrieve(Query(text="solar power"), [Strategy.RETRIEVE_READ, Strategy.HYBRID])

    assert [failure.strategy for failure in excinfo.value.failures] == ["retrieve_read", "hybrid"]
    assert excinfo.value.__cause__ is first


async def test_ensemble_strategy_list_handling(settings):
    dense = StubRetriever(Strategy.RETRIEVE_READ)
    hybrid = StubRetriever(Strategy.HYBRID)
    service = _service(settings, dense, hybrid)

    with pytest.raises(ValidationError):
        await service.ensemble_retrieve(Query(text="solar"), [])

    single = await service.ensemble_retrieve(Query(text="solar"), [Strategy.HYBRID])
    assert single.strategy is Strategy.HYBRID

    await service.ensemble_retrieve(Query(text="solar"), ["hybrid", "retrieve_read", "hybrid"])
    assert len(hybrid.calls) == 2
    assert len(dense.calls) == 1


async def test_ensemble_cancellation_propagates(settings):
    dense = StubRetriever(Strategy.RETRIEVE_READ, delay=10.0)
    hybrid = StubRetriever(Strategy.HYBRID, delay=10.0)
    service = _service(settings, dense, hybrid)

    task = asyncio.create_task(
        service.ensemble_retrieve(Query(text="solar"), [Strategy.RETRIEVE_READ, Strategy.HYBRID])
    )
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


async def test_analytics_recorded_once_per_query(settings):
    sink = InMemoryAnalyticsSink()
    dense = StubRetriever(Strategy.RETRIEVE_READ)
    hybrid = StubRetriever(Strategy.HYBRID, error=StoreError("offline"))
    service = _service(settings, dense, hybrid, analytics=sink)

    await service.retrieve_with_strategy(Query(text="solar", session_id="s-1"), Strategy.HYBRID)
    await service.ensemble_retrieve(Query(text="solar"), [Strategy.RETRIEVE_READ, Strategy.HYBRID])

    records = service.get_query_analytics()
    assert len(records) == 2
    assert records[0].fallback_used is True
    assert records[0].session_id == "s-1"
    assert records[1].strategy == "ensemble"
    metrics = service.get_system_metrics()
    assert metrics.total_queries == 2
    assert metrics.fallback_rate == 0.5


async def test_analytics_sink_failure_is_tolerated(settings):
    class ExplodingSink:
        def record(self, analytics):
            raise RuntimeError("disk full")

    service = _service(settings, StubRetriever(Strategy.RETRIEVE_READ), analytics=ExplodingSink())

    response = await service.retrieve(Query(text="solar"))

    assert response.results
    with pytest.raises(ConfigurationError):
        service.get_query_analytics()


async def test_routing_decision_reaches_store_aware_retrievers(settings):
    graph_rag = StubRetriever(Strategy.GRAPH_RAG, uses_routing=True)
    router = DatabaseRouter({StoreKind.VECTOR: object(), StoreKind.GRAPH: object()})
    service = _service(settings, StubRetriever(Strategy.RETRIEVE_READ), graph_rag, router=router)

    await service.retrieve_with_strategy(Query(text="which authors are the most influential"), Strategy.GRAPH_RAG)
    await service.retrieve_with_strategy(
        Query(text="what is machine learning", metadata={"routing_policy": "graph_first"}),
        Strategy.GRAPH_RAG,
    )

    analytics_decision = graph_rag.calls[0][1].routing
    assert analytics_decision.primary_store is StoreKind.GRAPH
    assert analytics_decision.policy == "adaptive"
    override_decision = graph_rag.calls[1][1].routing
    assert override_decision.policy == "graph_first"
    assert tuple(override_decision.stores) == (StoreKind.VECTOR, StoreKind.GRAPH)


async def test_routing_to_missing_store_is_configuration_error(settings):
    graph_rag = StubRetriever(Strategy.GRAPH_RAG, uses_routing=True)
    router = DatabaseRouter({StoreKind.VECTOR: object()})
    dense = StubRetriever(Strategy.RETRIEVE_READ)
    service = _service(settings, dense, graph_rag, router=router)

    with pytest.raises(ConfigurationError):
        await service.retrieve_with_strategy(Query(text="which authors are the most influential"), Strategy.GRAPH_RAG)
    assert graph_rag.calls == []
    assert dense.calls == []


async def test_adaptive_retrieve_delegates(settings):
    dense = StubRetriever(Strategy.RETRIEVE_READ)
    hybrid = StubRetriever(Strategy.HYBRID)
    adaptive = AdaptiveRetriever({Strategy.RETRIEVE_READ: dense, Strategy.HYBRID: hybrid}, {})
    service = RagService(
        {Strategy.RETRIEVE_READ: dense, Strategy.HYBRID: hybrid, Strategy.ADAPTIVE: adaptive},
        settings=settings,
    )

    response = await service.adaptive_retrieve(Query(text="What is RAG?"))

    assert response.strategy is Strategy.ADAPTIVE
    assert len(dense.calls) == 1
    assert dense.calls[0][1].score_threshold == 0.8


def test_branch_outcome_classification():
    wrapped = BranchOutcome.failure(Strategy.HYBRID, RuntimeError("boom"), "q-1")
    assert isinstance(wrapped.error, ProviderError)
    assert wrapped.error.query_id == "q-1"
    assert wrapped.recoverable is True
    assert BranchOutcome.failure(Strategy.HYBRID, ValidationError("bad"), "q-1").recoverable is False
    with pytest.raises(ProviderError):
        wrapped.unwrap()
    with pytest.raises(ProviderError):
        BranchOutcome(strategy=Strategy.HYBRID).unwrap()


@pytest.fixture
def live_service(provider, chroma_client):
    settings = get_settings(
        {
            "environment": "test",
            "score_threshold": 0.0,
            "chroma_collection": f"e2e-{uuid4().hex[:12]}",
        }
    )
    service = build_rag_service(settings, chroma_client=chroma_client, embedding_provider=provider)
    yield service
    service.shutdown()


async def test_document_lifecycle_end_to_end(live_service):
    solar = "Solar panels convert sunlight into electricity for homes and offices."
    doc_id = await live_service.add_document(solar, {"title": "Solar", "source": "handbook"})
    assert doc_id.startswith("doc_")
    assert await live_service.add_document(solar, {"title": "Solar copy"}) == doc_id

    ids = await live_service.add_documents(
        [
            {"content": "Wind turbines turn moving air into power.", "document_id": "wind"},
            {"content": "   "},
        ]
    )
    assert ids == ["wind", ""]

    stats = live_service.get_index_stats()
    assert stats["document_count"] == 2
    assert set(stats["documents"]) == {doc_id, "wind"}
    assert "graph_rag" not in stats["strategies"]

    response = await live_service.retrieve(Query(text="solar panels sunlight", strategy="retrieve_read"))
    assert response.results[0].document_id == doc_id

    ensemble = await live_service.ensemble_retrieve(Query(text="wind power"), ["retrieve_read", "hybrid"])
    assert ensemble.strategy is Strategy.ENSEMBLE
    assert ensemble.results[0].document_id == "wind"

    await live_service.update_document("wind", "Tidal generators harvest ocean currents.")
    updated = await live_service.retrieve(Query(text="tidal ocean currents", strategy="retrieve_read"))
    assert updated.results[0].document_id == "wind"

    await live_service.delete_document("wind")
    assert set(live_service.get_index_stats()["documents"]) == {doc_id}


async def test_health_check_reports_components(live_service):
    health = await live_service.health_check()
    assert health["status"] == "healthy"
    assert health["components"] == {
        "vector_store": "up",
        "embeddings": "up",
        "retrieval": "up",
        "graph": "not_configured",
    }
    assert "retrieve_read" in health["strategies"]
