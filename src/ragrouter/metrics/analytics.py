"""Query analytics sinks.

The orchestrator produces one :class:`~ragrouter.models.QueryAnalytics` record
per completed query and forwards it to a sink. Sinks own the records; a sink
failure must never fail the retrieval call that produced the record.
"""

from __future__ import annotations

import math
import threading
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Mapping, Protocol, Sequence, runtime_checkable

from ragrouter.models import QueryAnalytics


@runtime_checkable
class AnalyticsSink(Protocol):
    """Destination for per-query telemetry."""

    def record(self, analytics: QueryAnalytics) -> None:
        """Store a completed query's analytics record."""


@dataclass(frozen=True)
class SystemMetrics:
    total_queries: int
    average_latency: float
    p95_latency: float
    p99_latency: float
    strategy_distribution: Mapping[str, int]
    average_confidence: float
    average_coverage: float
    fallback_rate: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@runtime_checkable
class AnalyticsStore(AnalyticsSink, Protocol):
    """Sink that can also answer queries over the records it holds."""

    def query(self, start: datetime | None = None, end: datetime | None = None) -> Sequence[QueryAnalytics]:
        """Return records with ``start <= timestamp <= end``."""

    def summary(self, start: datetime | None = None, end: datetime | None = None) -> SystemMetrics:
        """Aggregate the records in a time window."""


class InMemoryAnalyticsSink:
    """Bounded in-process analytics log; oldest records are evicted first."""

    def __init__(self, max_records: int = 1000) -> None:
        self._records: deque[QueryAnalytics] = deque(maxlen=max(1, max_records))
        self._lock = threading.Lock()

    def record(self, analytics: QueryAnalytics) -> None:
        with self._lock:
            self._records.append(analytics)

    def __len__(self) -> int:
        return len(self._records)

    def query(self, start: datetime | None = None, end: datetime | None = None) -> Sequence[QueryAnalytics]:
        with self._lock:
            records = list(self._records)
        if start is not None:
            records = [r for r in records if r.timestamp >= start]
        if end is not None:
            records = [r for r in records if r.timestamp <= end]
        return records

    def summary(self, start: datetime | None = None, end: datetime | None = None) -> SystemMetrics:
        records = self.query(start, end)
        if not records:
            return SystemMetrics(
                total_queries=0,
                average_latency=0.0,
                p95_latency=0.0,
                p99_latency=0.0,
                strategy_distribution={},
                average_confidence=0.0,
                average_coverage=0.0,
                fallback_rate=0.0,
            )
        latencies = sorted(r.total_latency for r in records)
        count = len(records)
        return SystemMetrics(
            total_queries=count,
            average_latency=round(sum(latencies) / count, 2),
            p95_latency=_percentile(latencies, 0.95),
            p99_latency=_percentile(latencies, 0.99),
            strategy_distribution=dict(Counter(r.strategy for r in records)),
            average_confidence=round(sum(r.confidence for r in records) / count, 4),
            average_coverage=round(sum(r.coverage for r in records) / count, 4),
            fallback_rate=round(sum(1 for r in records if r.fallback_used) / count, 4),
        )


def _percentile(sorted_values: Sequence[float], quantile: float) -> float:
    index = min(len(sorted_values) - 1, max(0, math.floor(len(sorted_values) * quantile)))
    return sorted_values[index]


__all__ = ["AnalyticsSink", "AnalyticsStore", "InMemoryAnalyticsSink", "SystemMetrics"]
