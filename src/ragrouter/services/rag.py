"""Retrieval orchestration: strategy selection, fallback, ensembles and document management."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Sequence

from ragrouter.analysis import QueryAnalyzer
from ragrouter.config import Settings, get_settings
from ragrouter.embeddings.service import EmbeddingProvider
from ragrouter.embeddings.store import VectorStore
from ragrouter.errors import (
    ConfigurationError,
    EnsembleError,
    PartialFailure,
    ProviderError,
    RagError,
    RetrievalTimeoutError,
    ValidationError,
)
from ragrouter.fusion import EnsembleFuser, FusionMethod, check_fusion_method
from ragrouter.graph.store import GraphStore
from ragrouter.ingestion import ChunkedDocument, ChunkingService, IngestionError
from ragrouter.metrics.analytics import AnalyticsSink, AnalyticsStore, InMemoryAnalyticsSink, SystemMetrics
from ragrouter.metrics.observability import PipelineMetrics, bind_query_id, clear_query_id, get_logger
from ragrouter.models import Query, QueryAnalytics, RagResponse, Strategy
from ragrouter.retrieval.base import Retriever, StrategyConfig, default_strategy_configs
from ragrouter.routing.router import DatabaseRouter, StoreKind


@dataclass(frozen=True)
class BranchOutcome:
    """Result of running one retriever: either a response or a classified error."""

    strategy: Strategy
    response: RagResponse | None = None
    error: RagError | None = None
    # Only provider failures (backend errors, timeouts) may be retried on retrieve_read.
    recoverable: bool = False

    @property
    def ok(self) -> bool:
        return self.response is not None

    @classmethod
    def success(cls, strategy: Strategy, response: RagResponse) -> "BranchOutcome":
        return cls(strategy=strategy, response=response)

    @classmethod
    def failure(cls, strategy: Strategy, exc: BaseException, query_id: str) -> "BranchOutcome":
        if isinstance(exc, RagError):
            error = exc
            error.strategy = error.strategy or strategy.value
            error.query_id = error.query_id or query_id
        else:
            error = ProviderError(f"{strategy.value} retriever failed", strategy=strategy.value, query_id=query_id)
            error.__cause__ = exc
        recoverable = not isinstance(error, (ConfigurationError, ValidationError))
        return cls(strategy=strategy, error=error, recoverable=recoverable)

    def unwrap(self) -> RagResponse:
        if self.response is not None:
            return self.response
        if self.error is not None:
            raise self.error
        raise ProviderError(
            f"{self.strategy.value} returned neither a response nor an error",
            strategy=self.strategy.value,
        )


class RagService:
    """Entry point for retrieval. Holds only immutable wiring; all per-query state is local."""

    def __init__(
        self,
        retrievers: Mapping[Strategy | str, Retriever],
        *,
        analyzer: QueryAnalyzer | None = None,
        router: DatabaseRouter | None = None,
        fuser: EnsembleFuser | None = None,
        analytics: AnalyticsSink | None = None,
        configs: Mapping[Strategy, StrategyConfig] | None = None,
        settings: Settings | None = None,
        store: VectorStore | None = None,
        chunker: ChunkingService | None = None,
        graph_store: GraphStore | None = None,
        embedding_provider: EmbeddingProvider | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        registry: Dict[Strategy, Retriever] = {}
        for name, retriever in retrievers.items():
            strategy = Strategy.parse(name)
            if strategy is Strategy.ENSEMBLE:
                raise ConfigurationError("ensemble is a fusion label and cannot be registered")
            registry[strategy] = retriever
        if Strategy.RETRIEVE_READ not in registry:
            raise ConfigurationError("retrieve_read must be registered; it is the fallback strategy")
        if self._settings.default_strategy not in registry:
            raise ConfigurationError(
                f"Default strategy '{self._settings.default_strategy.value}' is not registered"
            )
        self._registry: Mapping[Strategy, Retriever] = MappingProxyType(registry)

        templates = default_strategy_configs(self._settings)
        templates.update(configs or {})
        self._configs: Mapping[Strategy, StrategyConfig] = MappingProxyType(templates)

        self._analyzer = analyzer or QueryAnalyzer()
        self._router = router or DatabaseRouter(
            {StoreKind.VECTOR: store, StoreKind.GRAPH: graph_store},
            default_policy=self._settings.router_default_policy,
        )
        self._fuser = fuser or EnsembleFuser()
        self._analytics = analytics if analytics is not None else InMemoryAnalyticsSink(
            self._settings.analytics_max_records
        )
        self._store = store
        self._chunker = chunker or ChunkingService()
        self._graph_store = graph_store
        self._provider = embedding_provider
        self._logger = get_logger("rag")

    @property
    def strategies(self) -> Sequence[Strategy]:
        return tuple(self._registry)

    @property
    def router(self) -> DatabaseRouter:
        return self._router

    async def retrieve(self, query: Query) -> RagResponse:
        """Analyze (when no strategy is set), retrieve with fallback, record analytics."""

        query = self._validate(query)
        bind_query_id(query.query_id)
        try:
            return await self._run_single(query, query.strategy)
        finally:
            clear_query_id()

    async def retrieve_with_strategy(
        self,
        query: Query,
        strategy: Strategy | str,
        config_override: Mapping[str, Any] | None = None,
    ) -> RagResponse:
        query = self._validate(query)
        bind_query_id(query.query_id)
        try:
            return await self._run_single(query, Strategy.parse(strategy), config_override)
        finally:
            clear_query_id()

    async def adaptive_retrieve(self, query: Query) -> RagResponse:
        return await self.retrieve(query.with_strategy(Strategy.ADAPTIVE))

    async def ensemble_retrieve(
        self,
        query: Query,
        strategies: Sequence[Strategy | str],
        *,
        method: FusionMethod = "max",
    ) -> RagResponse:
        """Run several strategies concurrently and fuse the successful responses."""

        query = self._validate(query)
        check_fusion_method(method)
        resolved = list(dict.fromkeys(Strategy.parse(name) for name in strategies))
        if not resolved:
            raise ValidationError("Ensemble retrieval needs at least one strategy", query_id=query.query_id)
        bind_query_id(query.query_id)
        try:
            if len(resolved) == 1:
                return await self._run_single(query, resolved[0])
            return await self._run_ensemble(query, resolved, method)
        finally:
            clear_query_id()

    async def _run_single(
        self,
        query: Query,
        strategy: Strategy | None,
        config_override: Mapping[str, Any] | None = None,
    ) -> RagResponse:
        query = self._prepare(query, strategy)
        selected = query.strategy or self._settings.default_strategy
        response = await self._retrieve_with_fallback(query, selected, config_override)
        self._record(query, response)
        return response

    async def _run_ensemble(self, query: Query, strategies: Sequence[Strategy], method: FusionMethod) -> RagResponse:
        query = self._prepare(query, None)
        branches = [
            (strategy, self._resolve(strategy), self._resolve_config(query, strategy))
            for strategy in strategies
        ]
        outcomes = await asyncio.gather(
            *(
                self._execute(query.with_strategy(strategy), strategy, retriever, config)
                for strategy, retriever, config in branches
            )
        )

        responses = [outcome.response for outcome in outcomes if outcome.response is not None]
        failures = []
        for outcome in outcomes:
            if outcome.error is None:
                continue
            failure = PartialFailure.from_exception(outcome.strategy.value, outcome.error)
            failures.append(failure)
            PipelineMetrics.record_branch_failure(failure.strategy, failure.error_type)
            self._logger.warning(
                "ensemble.branch_failed",
                query_id=query.query_id,
                strategy=failure.strategy,
                error_type=failure.error_type,
                error=failure.message,
            )

        if not responses:
            first = next(outcome.error for outcome in outcomes if outcome.error is not None)
            raise EnsembleError(
                f"All {len(outcomes)} ensemble strategies failed",
                tuple(failures),
                strategy=Strategy.ENSEMBLE.value,
                query_id=query.query_id,
            ) from first

        granularities = {response.granularity for response in responses}
        fused = self._fuser.fuse(
            responses,
            top_k=query.top_k or self._settings.default_top_k,
            granularity=granularities.pop() if len(granularities) == 1 else "mixed",
            method=method,
            partial_failures=failures,
        )
        self._record(query, fused)
        return fused

    async def _retrieve_with_fallback(
        self,
        query: Query,
        strategy: Strategy,
        config_override: Mapping[str, Any] | None = None,
    ) -> RagResponse:
        retriever = self._resolve(strategy)
        config = self._resolve_config(query, strategy, config_override)
        outcome = await self._execute(query, strategy, retriever, config)
        if outcome.error is None or not outcome.recoverable or strategy is Strategy.RETRIEVE_READ:
            return outcome.unwrap()

        PipelineMetrics.record_fallback(strategy.value)
        self._logger.warning(
            "retrieval.fallback",
            query_id=query.query_id,
            from_strategy=strategy.value,
            to_strategy=Strategy.RETRIEVE_READ.value,
            error_type=type(outcome.error).__name__,
            error=str(outcome.error),
        )
        fallback_query = query.with_strategy(Strategy.RETRIEVE_READ)
        fallback = await self._execute(
            fallback_query,
            Strategy.RETRIEVE_READ,
            self._registry[Strategy.RETRIEVE_READ],
            self._resolve_config(fallback_query, Strategy.RETRIEVE_READ),
        )
        response = fallback.unwrap()
        debug = replace(
            response.debug_info,
            fallback_used=True,
            strategy_reasoning=(
                f"Fell back from {strategy.value} after {type(outcome.error).__name__}. "
                f"{response.debug_info.strategy_reasoning}"
            ),
        )
        return response.with_updates(debug_info=debug)

    async def _execute(
        self,
        query: Query,
        strategy: Strategy,
        retriever: Retriever,
        config: StrategyConfig,
    ) -> BranchOutcome:
        """Run one retriever under its timeout. Never raises except on cancellation."""

        try:
            if retriever.uses_routing:
                config = self._route(query, config)
            response = await asyncio.wait_for(
                retriever.retrieve(query, config),
                timeout=config.timeout_seconds if config.timeout_seconds > 0 else None,
            )
        except asyncio.TimeoutError as exc:
            error = RetrievalTimeoutError(
                f"{strategy.value} exceeded {config.timeout_seconds}s",
                strategy=strategy.value,
                query_id=query.query_id,
            )
            error.__cause__ = exc
            return BranchOutcome.failure(strategy, error, query.query_id)
        except Exception as exc:
            return BranchOutcome.failure(strategy, exc, query.query_id)
        return BranchOutcome.success(strategy, response)

    def _route(self, query: Query, config: StrategyConfig) -> StrategyConfig:
        if config.routing is not None:
            return config
        context = self._analyzer.build_query_context(query)
        decision = self._router.route(context, query.metadata.get("routing_policy"))
        self._router.resolve_stores(decision)
        return config.merge(routing=decision)

    def _validate(self, query: Query) -> Query:
        if not query.text or not query.text.strip():
            raise ValidationError("Query text must not be empty", query_id=query.query_id)
        if query.top_k is not None:
            top_k = self._clamp_top_k(query.top_k, query.query_id)
            if top_k != query.top_k:
                query = query.with_updates(top_k=top_k)
        if query.filters is not None and query.filters.date_range is not None:
            start, end = query.filters.date_range
            if start > end:
                raise ValidationError("date_range start is after its end", query_id=query.query_id)
        return query

    def _prepare(self, query: Query, strategy: Strategy | None) -> Query:
        updates: Dict[str, Any] = {}
        if strategy is not None:
            updates["strategy"] = strategy
        if (query.strategy is None and strategy is None) or query.type is None or query.difficulty is None:
            analysis = self._analyzer.analyze(query.text)
            if query.type is None:
                updates["type"] = analysis.type
            if query.difficulty is None:
                updates["difficulty"] = analysis.difficulty
            if query.strategy is None and strategy is None:
                suggested = analysis.suggested_strategy
                if suggested not in self._registry:
                    suggested = self._settings.default_strategy
                updates["strategy"] = suggested
                self._logger.info(
                    "query.analyzed",
                    query_id=query.query_id,
                    query_type=analysis.type,
                    difficulty=analysis.difficulty,
                    suggested_strategy=analysis.suggested_strategy.value,
                    selected_strategy=suggested.value,
                )
        return query.with_updates(**updates) if updates else query

    def _resolve(self, strategy: Strategy) -> Retriever:
        retriever = self._registry.get(strategy)
        if retriever is None:
            raise ConfigurationError(f"Strategy '{strategy.value}' is not registered", strategy=strategy.value)
        return retriever

    def _resolve_config(
        self,
        query: Query,
        strategy: Strategy,
        config_override: Mapping[str, Any] | None = None,
    ) -> StrategyConfig:
        template = self._configs.get(strategy) or StrategyConfig(
            strategy=strategy,
            top_k=self._settings.default_top_k,
            score_threshold=self._settings.score_threshold,
            timeout_seconds=self._settings.retrieval_timeout_seconds,
        )
        config = template.merge(top_k=query.top_k)
        if config_override:
            config = config.merge(**dict(config_override))
            top_k = self._clamp_top_k(config.top_k, query.query_id)
            if top_k != config.top_k:
                config = config.merge(top_k=top_k)
        return config

    def _clamp_top_k(self, top_k: int, query_id: str) -> int:
        if top_k < 1:
            raise ValidationError(f"top_k must be at least 1, got {top_k}", query_id=query_id)
        if top_k > self._settings.max_top_k:
            self._logger.info(
                "query.top_k_clamped",
                query_id=query_id,
                requested=top_k,
                max_top_k=self._settings.max_top_k,
            )
            return self._settings.max_top_k
        return top_k

    def _record(self, query: Query, response: RagResponse) -> None:
        self._logger.info(
            "retrieval.complete",
            query_id=response.query_id,
            strategy=response.strategy.value,
            result_count=len(response.results),
            total_latency_ms=response.total_latency,
            fallback_used=response.debug_info.fallback_used,
        )
        record = QueryAnalytics(
            query_id=response.query_id,
            query_text=query.text,
            query_type=query.type or "factual",
            difficulty=response.debug_info.query_difficulty,
            strategy=response.strategy.value,
            top_k=response.top_k,
            granularity=response.granularity,
            total_latency=response.total_latency,
            embedding_latency=response.embedding_latency,
            retrieval_latency=response.retrieval_latency,
            reranking_latency=response.reranking_latency,
            results_returned=len(response.results),
            confidence=response.confidence,
            coverage=response.coverage,
            session_id=query.session_id,
            stores_used=tuple(response.debug_info.store_routing),
            fallback_used=response.debug_info.fallback_used,
            metadata={"client_id": query.client_id} if query.client_id else {},
        )
        try:
            self._analytics.record(record)
        except Exception as exc:
            PipelineMetrics.analytics_failures.inc()
            self._logger.warning("analytics.record_failed", query_id=record.query_id, error=str(exc))

    async def add_document(
        self,
        content: str,
        metadata: Mapping[str, Any] | None = None,
        *,
        document_id: str | None = None,
    ) -> str:
        """Chunk and index a document. Returns the existing id when identical content is already indexed."""

        store = self._require_store()
        chunked = await asyncio.to_thread(self._chunker.chunk, content, metadata, document_id=document_id)
        existing = None
        if chunked.metadata.content_hash:
            existing = await asyncio.to_thread(store.find_document_by_hash, chunked.metadata.content_hash)
        if existing:
            self._logger.info("ingestion.duplicate", document_id=existing, content_hash=chunked.metadata.content_hash)
            return existing
        return await self._index(store, chunked)

    async def add_documents(self, documents: Iterable[Mapping[str, Any]]) -> list[str]:
        """Index several documents; a failed document yields an empty id in its slot."""

        ids: list[str] = []
        for document in documents:
            try:
                ids.append(
                    await self.add_document(
                        str(document.get("content", "")),
                        document.get("metadata"),
                        document_id=document.get("document_id"),
                    )
                )
            except (IngestionError, RagError) as exc:
                self._logger.warning("ingestion.failed", error_type=type(exc).__name__, error=str(exc))
                ids.append("")
        return ids

    async def update_document(
        self,
        document_id: str,
        content: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> str:
        store = self._require_store()
        chunked = await asyncio.to_thread(self._chunker.chunk, content, metadata, document_id=document_id)
        await asyncio.to_thread(store.delete_document, document_id)
        return await self._index(store, chunked)

    async def delete_document(self, document_id: str) -> None:
        store = self._require_store()
        await asyncio.to_thread(store.delete_document, document_id)
        self._logger.info("ingestion.deleted", document_id=document_id)

    async def _index(self, store: VectorStore, chunked: ChunkedDocument) -> str:
        await asyncio.to_thread(store.upsert, chunked.chunks)
        self._logger.info(
            "ingestion.indexed",
            document_id=chunked.metadata.document_id,
            coarse_count=len(chunked.coarse),
            fine_count=len(chunked.fine),
        )
        return chunked.metadata.document_id

    def _require_store(self) -> VectorStore:
        if self._store is None:
            raise ConfigurationError("No vector store configured for document management")
        return self._store

    def get_index_stats(self) -> Dict[str, Any]:
        store = self._require_store()
        documents = dict(store.count_by_document())
        return {
            "collection": store.name,
            "total_chunks": store.count(),
            "document_count": len(documents),
            "documents": documents,
            "strategies": [strategy.value for strategy in self._registry],
            "routing": self._router.routing_stats(),
        }

    def get_query_analytics(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> Sequence[QueryAnalytics]:
        return self._analytics_store().query(start, end)

    def get_system_metrics(self, start: datetime | None = None, end: datetime | None = None) -> SystemMetrics:
        return self._analytics_store().summary(start, end)

    def _analytics_store(self) -> AnalyticsStore:
        if not isinstance(self._analytics, AnalyticsStore):
            raise ConfigurationError("Configured analytics sink does not support queries")
        return self._analytics

    async def health_check(self) -> Dict[str, Any]:
        checks = {
            "vector_store": self._check_vector_store(),
            "embeddings": self._check_embeddings(),
            "retrieval": self._check(self._registry[Strategy.RETRIEVE_READ].health_check()),
        }
        if self._graph_store is not None:
            checks["graph"] = self._check(asyncio.to_thread(self._graph_store.ping))
        results = await asyncio.gather(*checks.values())
        components = {name: ("up" if ok else "down") for name, ok in zip(checks, results)}
        if self._graph_store is None:
            components["graph"] = "not_configured"

        critical = ("vector_store", "retrieval")
        if all(status != "down" for status in components.values()):
            status = "healthy"
        elif any(components[name] == "down" for name in critical):
            status = "unhealthy"
        else:
            status = "degraded"
        self._logger.info("health.check", status=status, components=components)
        return {
            "status": status,
            "components": components,
            "strategies": [strategy.value for strategy in self._registry],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def _check_vector_store(self) -> bool:
        if self._store is None:
            return await self._check(self._registry[Strategy.RETRIEVE_READ].health_check())
        return await self._check(asyncio.to_thread(self._store.ping))

    async def _check_embeddings(self) -> bool:
        if self._provider is None:
            return True
        provider = self._provider
        return await self._check(asyncio.to_thread(lambda: bool(provider.embed_query("health check"))))

    async def _check(self, probe: Any) -> bool:
        try:
            return bool(await probe)
        except Exception as exc:
            self._logger.warning("health.probe_failed", error_type=type(exc).__name__, error=str(exc))
            return False

    def shutdown(self) -> None:
        if self._graph_store is not None:
            self._graph_store.close()
        self._logger.info("service.shutdown")


__all__ = ["BranchOutcome", "RagService"]
