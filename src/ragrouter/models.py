"""Shared domain models used across the retrieval engine."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Mapping, Sequence
from uuid import uuid4

from ragrouter.errors import ConfigurationError

Granularity = Literal["coarse", "fine", "adaptive"]
ChunkGranularity = Literal["coarse", "fine"]
QueryType = Literal["factual", "analytical", "creative", "comparison", "summarization"]
Difficulty = Literal["easy", "medium", "hard"]


class Strategy(str, Enum):
    """Named retrieval algorithms known to the engine."""

    RETRIEVE_READ = "retrieve_read"
    HYBRID = "hybrid"
    TWO_STAGE_RERANK = "two_stage_rerank"
    FUSION_IN_DECODER = "fusion_in_decoder"
    AUGMENTED_RERANKING = "augmented_reranking"
    FEDERATED = "federated"
    GRAPH_RAG = "graph_rag"
    ADAPTIVE = "adaptive"
    # Label carried by fused ensemble responses only; never registered.
    ENSEMBLE = "ensemble"

    @classmethod
    def parse(cls, value: "Strategy | str") -> "Strategy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ConfigurationError(f"Unknown retrieval strategy: {value!r}") from exc


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DocumentMetadata:
    """Metadata captured for an indexed document."""

    document_id: str
    title: str = "Untitled Document"
    source: str | None = None
    content_type: str | None = None
    language: str | None = None
    content_hash: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    extra: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DocumentChunk:
    """Chunk of document text at a given granularity tier, ready for embedding."""

    chunk_id: str
    text: str
    document_metadata: DocumentMetadata
    chunk_index: int
    granularity: ChunkGranularity = "coarse"
    start_offset: int = 0
    end_offset: int = 0
    chunk_metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ScoredChunk:
    """Chunk returned from the vector store with its similarity score."""

    chunk: DocumentChunk
    score: float


@dataclass(frozen=True)
class QueryFilters:
    """Predicates that narrow the candidate set. All supplied filters must match."""

    date_range: tuple[datetime, datetime] | None = None
    sources: Sequence[str] = ()
    content_types: Sequence[str] = ()
    languages: Sequence[str] = ()
    document_ids: Sequence[str] = ()

    def is_empty(self) -> bool:
        return not (self.date_range or self.sources or self.content_types or self.languages or self.document_ids)


@dataclass(frozen=True)
class Query:
    """Inbound retrieval request. ``query_id`` is assigned when absent."""

    text: str
    query_id: str = ""
    session_id: str | None = None
    client_id: str | None = None
    type: QueryType | None = None
    difficulty: Difficulty | None = None
    top_k: int | None = None
    granularity: Granularity | None = None
    strategy: Strategy | None = None
    filters: QueryFilters | None = None
    include_metadata: bool = False
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.query_id:
            object.__setattr__(self, "query_id", uuid4().hex)
        if self.strategy is not None and not isinstance(self.strategy, Strategy):
            object.__setattr__(self, "strategy", Strategy.parse(self.strategy))

    def with_updates(self, **changes: Any) -> "Query":
        return replace(self, **changes)

    def with_strategy(self, strategy: Strategy | str) -> "Query":
        return replace(self, strategy=Strategy.parse(strategy))


@dataclass(frozen=True)
class QueryIntent:
    primary: str = "information_retrieval"
    domain: str = "general"
    temporality: Literal["current", "historical", "future", "timeless"] = "timeless"
    specificity: Literal["general", "specific"] = "general"


@dataclass(frozen=True)
class QueryAnalysis:
    """Rule-based classification of a query. Produced fresh per query."""

    type: QueryType
    difficulty: Difficulty
    complexity: float
    entities: Sequence[str]
    keywords: Sequence[str]
    intent: QueryIntent
    suggested_strategy: Strategy
    confidence: float


@dataclass(frozen=True)
class RetrievalResult:
    """A single ranked hit in a response."""

    id: str
    content: str
    score: float
    rank: int
    document_id: str
    chunk_id: str | None = None
    dense_score: float | None = None
    sparse_score: float | None = None
    hybrid_score: float | None = None
    rerank_score: float | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    chunk_granularity: ChunkGranularity = "coarse"
    expanded_context: str | None = None
    entity_id: str | None = None
    relationship_path: Sequence[str] | None = None

    @property
    def fusion_key(self) -> tuple[str, str | None]:
        return (self.document_id, self.chunk_id)


@dataclass(frozen=True)
class TimingBreakdown:
    embedding: float = 0.0
    retrieval: float = 0.0
    post_processing: float = 0.0
    reranking: float | None = None


@dataclass(frozen=True)
class ScoringDetails:
    normalized_scores: bool = True
    hybrid_weights: Mapping[str, float] | None = None
    reranking_model: str | None = None


@dataclass(frozen=True)
class DebugInfo:
    query_difficulty: str
    strategy_reasoning: str
    store_routing: Sequence[str] = ()
    index_used: str = ""
    candidates_retrieved: int = 0
    reranked: bool = False
    fallback_used: bool = False
    timing: TimingBreakdown = field(default_factory=TimingBreakdown)
    scoring: ScoringDetails = field(default_factory=ScoringDetails)
    partial_failures: Sequence[Mapping[str, str]] = ()


@dataclass(frozen=True)
class RagResponse:
    """Ranked, explainable result of one retrieval call. Latencies are in milliseconds."""

    query_id: str
    results: Sequence[RetrievalResult]
    total_latency: float
    embedding_latency: float
    retrieval_latency: float
    strategy: Strategy
    top_k: int
    granularity: str
    confidence: float
    coverage: float
    explanation: str
    debug_info: DebugInfo
    reranking_latency: float | None = None

    def with_updates(self, **changes: Any) -> "RagResponse":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["strategy"] = self.strategy.value
        payload["results"] = [
            {**item, "metadata": _jsonable(item["metadata"])} for item in payload["results"]
        ]
        return payload


@dataclass(frozen=True)
class QueryAnalytics:
    """Append-only telemetry record for one completed query."""

    query_id: str
    query_text: str
    query_type: str
    difficulty: str
    strategy: str
    top_k: int
    granularity: str
    total_latency: float
    embedding_latency: float
    retrieval_latency: float
    results_returned: int
    confidence: float
    coverage: float
    session_id: str | None = None
    reranking_latency: float | None = None
    stores_used: Sequence[str] = ()
    fallback_used: bool = False
    timestamp: datetime = field(default_factory=_utcnow)
    metadata: Mapping[str, Any] = field(default_factory=dict)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value
