from __future__ import annotations

from uuid import uuid4

import chromadb
import pytest

from ragrouter.config import Settings, get_settings
from ragrouter.embeddings import ChromaVectorStore, EmbeddingConfig, HashEmbeddingBackend


@pytest.fixture
def settings() -> Settings:
    return get_settings({"environment": "test", "score_threshold": 0.0})


@pytest.fixture
def provider() -> HashEmbeddingBackend:
    return HashEmbeddingBackend(EmbeddingConfig(dim=256))


@pytest.fixture
def chroma_client():
    return chromadb.EphemeralClient()


@pytest.fixture
def vector_store(provider: HashEmbeddingBackend, chroma_client) -> ChromaVectorStore:
    # Ephemeral clients share state within a process, so every test gets its own collection
    return ChromaVectorStore(provider, f"test-{uuid4().hex[:12]}", client=chroma_client)
