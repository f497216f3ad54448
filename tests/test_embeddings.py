from __future__ import annotations

import math

from ragrouter.embeddings.service import EmbeddingConfig, HashEmbeddingBackend, HuggingFaceEmbeddingBackend
from ragrouter.models import DocumentChunk, DocumentMetadata


def _make_chunk(text: str, index: int = 0) -> DocumentChunk:
    meta = DocumentMetadata(document_id="doc-1", title="Doc")
    return DocumentChunk(chunk_id=f"c{index}", text=text, document_metadata=meta, chunk_index=index)


def _cosine(left, right) -> float:
    return sum(a * b for a, b in zip(left, right))


def test_hash_embedding_dim_matches_config():
    backend = HashEmbeddingBackend(EmbeddingConfig(dim=64))
    vec = backend.embed_query("hello world")
    assert isinstance(vec, tuple)
    assert len(vec) == 64
    assert math.isclose(math.sqrt(sum(v * v for v in vec)), 1.0, rel_tol=1e-9)


def test_hash_embedding_is_deterministic_and_symmetric():
    backend = HashEmbeddingBackend(EmbeddingConfig(dim=128))
    assert backend.embed_query("Vector stores") == backend.embed_query("Vector stores")
    assert backend.embed_query("vector stores") == backend.embed_document("vector stores")
    assert backend.embed("") == backend.embed("")


def test_hash_embedding_reflects_token_overlap():
    backend = HashEmbeddingBackend(EmbeddingConfig(dim=512))
    query = backend.embed_query("machine learning models")
    related = backend.embed_document("machine learning")
    assert _cosine(query, related) > 0.5
    assert _cosine(query, backend.embed_query("machine learning models")) > 0.999


def test_hash_embedding_chunks_returns_vectors():
    backend = HashEmbeddingBackend(EmbeddingConfig(dim=32))
    chunks = [_make_chunk("alpha", 0), _make_chunk("beta", 1)]
    embeddings = backend.embed_chunks(chunks)
    assert len(embeddings) == 2
    assert len(embeddings[0].vector) == 32
    assert embeddings[1].chunk.chunk_id == "c1"


def test_huggingface_backend_hash_only_mode_delegates():
    config = EmbeddingConfig(dim=48, use_model=False, query_instruction="query: ")
    backend = HuggingFaceEmbeddingBackend(config)
    reference = HashEmbeddingBackend(config)
    assert backend.model_name == "hash-48"
    assert backend.embed_query("graph databases") == reference.embed_query("graph databases")
    assert backend.embed_chunks([]) == []
