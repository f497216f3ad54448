"""Logging, Prometheus metrics and query analytics."""

from .analytics import AnalyticsSink, AnalyticsStore, InMemoryAnalyticsSink, SystemMetrics
from .observability import PipelineMetrics, Stopwatch, bind_query_id, clear_query_id, configure_logging, get_logger

__all__ = [
    "AnalyticsSink",
    "AnalyticsStore",
    "InMemoryAnalyticsSink",
    "PipelineMetrics",
    "Stopwatch",
    "SystemMetrics",
    "bind_query_id",
    "clear_query_id",
    "configure_logging",
    "get_logger",
]
