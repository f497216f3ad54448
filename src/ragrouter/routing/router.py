"""Per-query store routing between the vector store and the graph store.

Routing is orthogonal to strategy selection: a policy looks only at the shape
of the query (its :class:`QueryContext`) and decides which backing store(s)
should serve it. Decisions are plain values, built fresh for every query and
never cached.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Literal, Mapping, Protocol, Sequence

from ragrouter.errors import ConfigurationError
from ragrouter.metrics.observability import PipelineMetrics, get_logger

ContextQueryType = Literal[
    "entity_lookup",
    "relationship_traversal",
    "semantic_search",
    "hybrid_search",
    "graph_analytics",
]
Complexity = Literal["simple", "medium", "complex"]

_logger = get_logger("routing")


class StoreKind(str, Enum):
    VECTOR = "vector"
    GRAPH = "graph"


@dataclass(frozen=True)
class QueryContext:
    query: str
    query_type: ContextQueryType
    complexity: Complexity = "medium"
    expected_traversal_depth: int | None = None
    requires_graph_analytics: bool = False


@dataclass(frozen=True)
class RoutingDecision:
    primary_store: StoreKind
    reasoning: str
    secondary_store: StoreKind | None = None
    use_hybrid: bool = False
    # Observability only; never used for control flow.
    estimated_latency_ms: float | None = None
    policy: str = ""

    @property
    def stores(self) -> Sequence[StoreKind]:
        if self.secondary_store is None:
            return (self.primary_store,)
        return (self.primary_store, self.secondary_store)


@dataclass(frozen=True)
class RoutedStores:
    """Store handles selected for one routing decision."""

    decision: RoutingDecision
    primary: Any
    secondary: Any | None = None


class RoutingPolicy(Protocol):
    name: str
    description: str

    def evaluate(self, context: QueryContext) -> RoutingDecision:
        """Return the store routing for a query context."""


class VectorFirstPolicy:
    name = "vector_first"
    description = "Prioritizes the vector store for semantic similarity searches"

    def evaluate(self, context: QueryContext) -> RoutingDecision:
        use_graph = (
            context.query_type in ("relationship_traversal", "graph_analytics")
            or (context.expected_traversal_depth or 0) > 2
        )
        if use_graph:
            return RoutingDecision(
                primary_store=StoreKind.GRAPH,
                secondary_store=StoreKind.VECTOR,
                use_hybrid=True,
                reasoning="Complex graph traversal detected, using the graph store with vector fallback",
            )
        return RoutingDecision(
            primary_store=StoreKind.VECTOR,
            reasoning="Vector similarity search, using the vector store",
        )


class GraphFirstPolicy:
    name = "graph_first"
    description = "Prioritizes the graph store for relationship traversal and graph analytics"

    def evaluate(self, context: QueryContext) -> RoutingDecision:
        use_vector = (
            context.query_type == "semantic_search"
            and not context.requires_graph_analytics
            and (context.expected_traversal_depth or 0) <= 1
        )
        if use_vector:
            return RoutingDecision(
                primary_store=StoreKind.VECTOR,
                secondary_store=StoreKind.GRAPH,
                use_hybrid=True,
                reasoning="Simple semantic search with potential graph enhancement",
            )
        return RoutingDecision(
            primary_store=StoreKind.GRAPH,
            reasoning="Graph-native query, using the graph store",
        )


class AdaptivePolicy:
    name = "adaptive"
    description = "Routes queries based on their type, depth and complexity"

    def evaluate(self, context: QueryContext) -> RoutingDecision:
        if context.query_type == "semantic_search" and context.complexity == "simple":
            return RoutingDecision(
                primary_store=StoreKind.VECTOR,
                reasoning="Simple semantic search, vector store optimal for similarity",
                estimated_latency_ms=50,
            )
        if context.query_type == "graph_analytics" or context.requires_graph_analytics:
            return RoutingDecision(
                primary_store=StoreKind.GRAPH,
                reasoning="Graph analytics required, graph store provides native graph operations",
                estimated_latency_ms=150,
            )
        if context.query_type == "relationship_traversal":
            depth = context.expected_traversal_depth if context.expected_traversal_depth is not None else 1
            if depth <= 1:
                return RoutingDecision(
                    primary_store=StoreKind.VECTOR,
                    secondary_store=StoreKind.GRAPH,
                    use_hybrid=True,
                    reasoning="Shallow relationship traversal, hybrid approach for completeness",
                    estimated_latency_ms=100,
                )
            return RoutingDecision(
                primary_store=StoreKind.GRAPH,
                reasoning=f"Deep relationship traversal (depth {depth}), graph store optimal",
                estimated_latency_ms=200,
            )
        if context.query_type == "hybrid_search":
            return RoutingDecision(
                primary_store=StoreKind.VECTOR,
                secondary_store=StoreKind.GRAPH,
                use_hybrid=True,
                reasoning="Hybrid search combining vector similarity and graph relationships",
                estimated_latency_ms=250,
            )
        if context.query_type == "entity_lookup":
            reasoning = "Entity lookup, vector store sufficient"
        else:
            reasoning = f"{context.complexity.capitalize()} semantic search, vector store sufficient"
        return RoutingDecision(
            primary_store=StoreKind.VECTOR,
            reasoning=reasoning,
            estimated_latency_ms=30,
        )


class DatabaseRouter:
    """Selects backing stores per query using a named routing policy."""

    def __init__(
        self,
        stores: Mapping[StoreKind, Any] | None = None,
        *,
        policies: Sequence[RoutingPolicy] | None = None,
        default_policy: str = "adaptive",
    ) -> None:
        self._stores: Dict[StoreKind, Any] = dict(stores or {})
        self._policies: Dict[str, RoutingPolicy] = {}
        for policy in policies or (VectorFirstPolicy(), GraphFirstPolicy(), AdaptivePolicy()):
            self.register_policy(policy)
        self._default_policy = "adaptive"
        self.set_default_policy(default_policy)

    @property
    def default_policy(self) -> str:
        return self._default_policy

    def register_policy(self, policy: RoutingPolicy) -> None:
        self._policies[policy.name] = policy

    def set_default_policy(self, name: str) -> None:
        if name not in self._policies:
            raise ConfigurationError(f"Routing policy '{name}' not found")
        self._default_policy = name

    def has_store(self, kind: StoreKind) -> bool:
        return self._stores.get(kind) is not None

    def route(self, context: QueryContext, policy_name: str | None = None) -> RoutingDecision:
        name = policy_name or self._default_policy
        policy = self._policies.get(name)
        if policy is None:
            raise ConfigurationError(f"Routing policy '{name}' not found")
        decision = policy.evaluate(context)
        if decision.policy != policy.name:
            decision = replace(decision, policy=policy.name)
        PipelineMetrics.record_routing(policy.name, decision.primary_store.value, decision.use_hybrid)
        _logger.info(
            "routing.decision",
            policy=policy.name,
            query_type=context.query_type,
            complexity=context.complexity,
            depth=context.expected_traversal_depth,
            primary_store=decision.primary_store.value,
            secondary_store=decision.secondary_store.value if decision.secondary_store else None,
            use_hybrid=decision.use_hybrid,
            reasoning=decision.reasoning,
        )
        return decision

    def resolve_stores(self, decision: RoutingDecision) -> RoutedStores:
        primary = self._stores.get(decision.primary_store)
        if primary is None:
            raise ConfigurationError(f"No {decision.primary_store.value} store registered for routing decision")
        secondary = None
        if decision.secondary_store is not None:
            secondary = self._stores.get(decision.secondary_store)
            if secondary is None:
                raise ConfigurationError(
                    f"No {decision.secondary_store.value} store registered for routing decision"
                )
        return RoutedStores(decision=decision, primary=primary, secondary=secondary)

    def routing_stats(self) -> Dict[str, Any]:
        return {
            "available_policies": list(self._policies),
            "default_policy": self._default_policy,
            "policies": [
                {"name": policy.name, "description": policy.description} for policy in self._policies.values()
            ],
            "registered_stores": [kind.value for kind, store in self._stores.items() if store is not None],
        }


class QueryContextBuilder:
    """Fluent builder for :class:`QueryContext` values."""

    def __init__(self) -> None:
        self._fields: Dict[str, Any] = {}

    def query(self, text: str) -> "QueryContextBuilder":
        self._fields["query"] = text
        return self

    def type(self, query_type: ContextQueryType) -> "QueryContextBuilder":
        self._fields["query_type"] = query_type
        return self

    def complexity(self, complexity: Complexity) -> "QueryContextBuilder":
        self._fields["complexity"] = complexity
        return self

    def traversal_depth(self, depth: int) -> "QueryContextBuilder":
        self._fields["expected_traversal_depth"] = depth
        return self

    def requires_graph_analytics(self, required: bool = True) -> "QueryContextBuilder":
        self._fields["requires_graph_analytics"] = required
        return self

    def build(self) -> QueryContext:
        if not self._fields.get("query") or not self._fields.get("query_type"):
            raise ConfigurationError("Query and query_type are required")
        return QueryContext(**self._fields)
