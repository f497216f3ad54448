"""Retrieval strategies."""

from .adaptive import AdaptiveRetriever
from .base import Retriever, StrategyConfig, VectorSearcher, default_strategy_configs, rank_results
from .dense import DenseRetriever
from .federated import FederatedRetriever
from .graph import GraphRetriever
from .hybrid import HybridRetriever
from .rerank import (
    AugmentedRerankingRetriever,
    CrossEncoderReranker,
    LexicalReranker,
    Reranker,
    TwoStageRerankRetriever,
)

__all__ = [
    "AdaptiveRetriever",
    "AugmentedRerankingRetriever",
    "CrossEncoderReranker",
    "DenseRetriever",
    "FederatedRetriever",
    "GraphRetriever",
    "HybridRetriever",
    "LexicalReranker",
    "Reranker",
    "Retriever",
    "StrategyConfig",
    "TwoStageRerankRetriever",
    "VectorSearcher",
    "default_strategy_configs",
    "rank_results",
]
