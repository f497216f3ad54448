"""Runtime configuration for the retrieval engine."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ragrouter.errors import ConfigurationError
from ragrouter.models import Strategy


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="ragrouter_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"
    log_level: str = "INFO"

    # Embeddings
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    embedding_dim: int = 384
    use_model_embeddings: bool = False
    # Prefix for instruction-tuned models (e.g. BGE, E5); empty disables query/document asymmetry
    embedding_query_instruction: str = ""
    embedding_device: str | None = None

    # Vector store
    chroma_persist_dir: Path = Path("./.chroma")
    chroma_collection: str = "ragrouter-chunks"
    chroma_host: str | None = None
    chroma_port: int | None = None
    chroma_ssl: bool = False
    # Extra collections searched by the federated strategy, e.g. "papers,manuals"
    federated_collections: tuple[str, ...] | str = ()

    # Graph store
    neo4j_uri: str | None = None
    neo4j_user: str = "neo4j"
    neo4j_password: str | None = None
    neo4j_database: str | None = None

    # Retrieval
    default_strategy: Strategy = Strategy.RETRIEVE_READ
    default_top_k: int = 5
    max_top_k: int = 50
    score_threshold: float = 0.5
    retrieval_timeout_seconds: float = 30.0
    strategy_overrides: dict[str, dict[str, Any]] = {}
    router_default_policy: Literal["adaptive", "vector_first", "graph_first"] = "adaptive"

    # Reranking
    use_cross_encoder: bool = False
    cross_encoder_model: str = "cross-encoder/ms-marco-MiniLM-L-6-v2"
    cross_encoder_device: str | None = None

    # Chunking
    coarse_chunk_size: int = 1000
    fine_chunk_size: int = 200
    chunk_overlap: int = 50

    # Analytics
    analytics_max_records: int = 1000

    evaluation_min_recall: float = 0.5
    evaluation_min_mrr: float = 0.5

    @field_validator("default_strategy", mode="before")
    @classmethod
    def _parse_strategy(cls, value: object) -> Strategy:
        try:
            strategy = Strategy.parse(value)  # type: ignore[arg-type]
        except ConfigurationError as exc:
            raise ValueError(str(exc)) from exc
        if strategy is Strategy.ENSEMBLE:
            raise ValueError("ensemble is a fusion label, not a default strategy")
        return strategy

    @property
    def is_test(self) -> bool:
        return self.environment == "test"

    @property
    def federated_collections_tuple(self) -> tuple[str, ...]:
        value = self.federated_collections
        if isinstance(value, tuple):
            return value
        if isinstance(value, str):
            return tuple(p.strip() for p in value.split(",") if p.strip())
        return ()


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
