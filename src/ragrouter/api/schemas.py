"""Pydantic models that a transport layer uses to marshal queries and responses."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ragrouter.models import Difficulty, Granularity, Query, QueryFilters, QueryType, RagResponse, Strategy


class QueryFiltersModel(BaseModel):
    date_from: Optional[datetime] = Field(default=None, description="Only documents created at or after this time")
    date_to: Optional[datetime] = Field(default=None, description="Only documents created at or before this time")
    sources: List[str] = Field(default_factory=list)
    content_types: List[str] = Field(default_factory=list)
    languages: List[str] = Field(default_factory=list)
    document_ids: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_range(self) -> "QueryFiltersModel":
        if (self.date_from is None) != (self.date_to is None):
            raise ValueError("date_from and date_to must be supplied together")
        if self.date_from is not None and self.date_to is not None and self.date_from > self.date_to:
            raise ValueError("date_from must not be after date_to")
        return self

    def to_filters(self) -> QueryFilters:
        date_range = None
        if self.date_from is not None and self.date_to is not None:
            date_range = (self.date_from, self.date_to)
        return QueryFilters(
            date_range=date_range,
            sources=tuple(self.sources),
            content_types=tuple(self.content_types),
            languages=tuple(self.languages),
            document_ids=tuple(self.document_ids),
        )


class QueryRequest(BaseModel):
    text: str = Field(..., min_length=1, description="Natural-language query")
    query_id: Optional[str] = Field(default=None, description="Caller-supplied id; generated when absent")
    session_id: Optional[str] = None
    client_id: Optional[str] = None
    type: Optional[QueryType] = None
    difficulty: Optional[Difficulty] = None
    top_k: Optional[int] = Field(default=None, ge=1, description="Override the number of results")
    granularity: Optional[Granularity] = None
    strategy: Optional[Strategy] = Field(default=None, description="Force a retrieval strategy")
    filters: Optional[QueryFiltersModel] = None
    include_metadata: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_query(self) -> Query:
        return Query(
            text=self.text,
            query_id=self.query_id or "",
            session_id=self.session_id,
            client_id=self.client_id,
            type=self.type,
            difficulty=self.difficulty,
            top_k=self.top_k,
            granularity=self.granularity,
            strategy=self.strategy,
            filters=self.filters.to_filters() if self.filters else None,
            include_metadata=self.include_metadata,
            metadata=dict(self.metadata),
        )


class EnsembleRequest(BaseModel):
    query: QueryRequest
    strategies: List[Strategy] = Field(..., min_length=1)
    method: Literal["max", "rrf"] = "max"


class RetrievalResultModel(BaseModel):
    id: str
    content: str
    score: float = Field(..., ge=0.0, le=1.0)
    rank: int = Field(..., ge=1)
    document_id: str
    chunk_id: Optional[str] = None
    dense_score: Optional[float] = None
    sparse_score: Optional[float] = None
    hybrid_score: Optional[float] = None
    rerank_score: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    chunk_granularity: str = "coarse"
    expanded_context: Optional[str] = None
    entity_id: Optional[str] = None
    relationship_path: Optional[List[str]] = None


class TimingModel(BaseModel):
    embedding: float
    retrieval: float
    post_processing: float
    reranking: Optional[float] = None


class ScoringModel(BaseModel):
    normalized_scores: bool
    hybrid_weights: Optional[Dict[str, float]] = None
    reranking_model: Optional[str] = None


class PartialFailureModel(BaseModel):
    strategy: str
    error_type: str
    message: str


class DebugInfoModel(BaseModel):
    query_difficulty: str
    strategy_reasoning: str
    store_routing: List[str]
    index_used: str
    candidates_retrieved: int
    reranked: bool
    fallback_used: bool
    timing: TimingModel
    scoring: ScoringModel
    partial_failures: List[PartialFailureModel] = Field(default_factory=list)


class RagResponseModel(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    query_id: str
    results: List[RetrievalResultModel]
    total_latency: float
    embedding_latency: float
    retrieval_latency: float
    reranking_latency: Optional[float] = None
    strategy: Strategy
    top_k: int
    granularity: str
    confidence: float
    coverage: float
    explanation: str
    debug_info: DebugInfoModel

    @classmethod
    def from_response(cls, response: RagResponse) -> "RagResponseModel":
        return cls.model_validate(response.to_dict())


class DocumentRequest(BaseModel):
    content: str = Field(..., min_length=1, description="Raw document text")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    document_id: Optional[str] = None


class DocumentIngestionResponse(BaseModel):
    document_ids: List[str] = Field(..., description="Indexed ids; empty string where a document failed")


class IndexStatsResponse(BaseModel):
    collection: str
    total_chunks: int
    document_count: int
    documents: Dict[str, int]
    strategies: List[str]


class HealthResponse(BaseModel):
    status: Literal["healthy", "degraded", "unhealthy"]
    components: Dict[str, str]
    strategies: List[str]
    timestamp: str
