"""Store routing policies."""

from .router import (
    AdaptivePolicy,
    DatabaseRouter,
    GraphFirstPolicy,
    QueryContext,
    QueryContextBuilder,
    RoutedStores,
    RoutingDecision,
    RoutingPolicy,
    StoreKind,
    VectorFirstPolicy,
)

__all__ = [
    "AdaptivePolicy",
    "DatabaseRouter",
    "GraphFirstPolicy",
    "QueryContext",
    "QueryContextBuilder",
    "RoutedStores",
    "RoutingDecision",
    "RoutingPolicy",
    "StoreKind",
    "VectorFirstPolicy",
]
