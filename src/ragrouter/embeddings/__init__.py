"""Embedding providers and vector stores."""

from .service import (
    Embedding,
    EmbeddingConfig,
    EmbeddingProvider,
    HashEmbeddingBackend,
    HuggingFaceEmbeddingBackend,
)
from .store import ChromaVectorStore, VectorStore

__all__ = [
    "ChromaVectorStore",
    "Embedding",
    "EmbeddingConfig",
    "EmbeddingProvider",
    "HashEmbeddingBackend",
    "HuggingFaceEmbeddingBackend",
    "VectorStore",
]
