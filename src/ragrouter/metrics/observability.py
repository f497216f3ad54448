"""Observability helpers for the retrieval engine."""

from __future__ import annotations

import logging
import time
from typing import Iterable

import structlog
from prometheus_client import Counter, Histogram

_logger_configured = False


def configure_logging(level: int | str = logging.INFO) -> None:
    global _logger_configured  # noqa: PLW0603 - module-level guard
    if _logger_configured:
        return
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _logger_configured = True


def bind_query_id(query_id: str) -> None:
    structlog.contextvars.bind_contextvars(query_id=query_id)


def clear_query_id() -> None:
    structlog.contextvars.unbind_contextvars("query_id")


def get_logger(name: str = "ragrouter") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


def _clamp_score(score: float) -> float:
    if score < 0.0:
        return 0.0
    if score > 1.0:
        return 1.0
    return score


class PipelineMetrics:
    """Prometheus metrics for retrieval stages."""

    ingestion_latency = Histogram(
        "ragrouter_ingestion_duration_seconds",
        "Time spent chunking and indexing a document.",
        buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0),
    )
    ingested_chunks = Counter(
        "ragrouter_ingested_chunks_total",
        "Chunks written to the vector store.",
        ["granularity"],
    )
    embedding_latency = Histogram(
        "ragrouter_embedding_duration_seconds",
        "Time spent embedding query text.",
        buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 2.5),
    )
    retrieval_latency = Histogram(
        "ragrouter_retrieval_duration_seconds",
        "End-to-end retrieval time per strategy.",
        ["strategy"],
        buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0),
    )
    retrieved_result_count = Histogram(
        "ragrouter_retrieved_result_count",
        "Number of results returned per response.",
        buckets=(0, 1, 2, 3, 5, 8, 13, 21),
    )
    result_score = Histogram(
        "ragrouter_result_score",
        "Normalized scores of returned results.",
        buckets=(0.0, 0.25, 0.5, 0.75, 1.0),
    )
    fallbacks = Counter(
        "ragrouter_strategy_fallback_total",
        "Retrievals that fell back to retrieve_read.",
        ["from_strategy"],
    )
    ensemble_branch_failures = Counter(
        "ragrouter_ensemble_branch_failure_total",
        "Ensemble branches that failed while others succeeded.",
        ["strategy", "error_type"],
    )
    routing_decisions = Counter(
        "ragrouter_routing_decision_total",
        "Store routing decisions by policy and primary store.",
        ["policy", "primary_store", "hybrid"],
    )
    analytics_failures = Counter(
        "ragrouter_analytics_record_failure_total",
        "Analytics records that could not be delivered to the sink.",
    )

    @classmethod
    def observe_ingestion(cls, duration_seconds: float, chunk_counts: dict[str, int]) -> None:
        cls.ingestion_latency.observe(duration_seconds)
        for granularity, count in chunk_counts.items():
            cls.ingested_chunks.labels(granularity=granularity).inc(count)

    @classmethod
    def observe_embedding(cls, duration_seconds: float) -> None:
        cls.embedding_latency.observe(duration_seconds)

    @classmethod
    def observe_retrieval(
        cls,
        strategy: str,
        duration_seconds: float,
        result_count: int,
        scores: Iterable[float],
    ) -> None:
        cls.retrieval_latency.labels(strategy=strategy).observe(duration_seconds)
        cls.retrieved_result_count.observe(result_count)
        for score in scores:
            cls.result_score.observe(_clamp_score(score))

    @classmethod
    def record_fallback(cls, from_strategy: str) -> None:
        cls.fallbacks.labels(from_strategy=from_strategy).inc()

    @classmethod
    def record_branch_failure(cls, strategy: str, error_type: str) -> None:
        cls.ensemble_branch_failures.labels(strategy=strategy, error_type=error_type).inc()

    @classmethod
    def record_routing(cls, policy: str, primary_store: str, hybrid: bool) -> None:
        cls.routing_decisions.labels(policy=policy, primary_store=primary_store, hybrid=str(hybrid).lower()).inc()


class Stopwatch:
    """Millisecond stopwatch used for response latency fields."""

    def __init__(self) -> None:
        self._start = time.perf_counter()

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self._start) * 1000


__all__ = [
    "PipelineMetrics",
    "Stopwatch",
    "bind_query_id",
    "clear_query_id",
    "configure_logging",
    "get_logger",
]
