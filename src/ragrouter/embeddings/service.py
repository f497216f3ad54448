"""Embedding providers for the retrieval engine."""

from __future__ import annotations

import hashlib
import logging
import math
import re
from dataclasses import dataclass
from typing import Protocol, Sequence, Tuple

from langchain_community.embeddings import HuggingFaceEmbeddings
from langchain_core.embeddings import Embeddings as LangChainEmbeddings

from ragrouter.errors import EmbeddingError
from ragrouter.models import DocumentChunk

LOGGER = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"\w+")

Vector = Tuple[float, ...]


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration for embedding providers."""

    model: str = "sentence-transformers/all-MiniLM-L6-v2"
    dim: int = 384
    use_model: bool = False
    device: str | None = None
    normalize: bool = True
    query_instruction: str = ""
    cache_folder: str | None = None


@dataclass(frozen=True)
class Embedding:
    """Vector representation of a document chunk."""

    chunk: DocumentChunk
    vector: Vector


class EmbeddingProvider(Protocol):
    """Black-box ``text -> vector`` function with optional query/document asymmetry."""

    @property
    def model_name(self) -> str:
        """Identifier of the underlying model."""

    def embed(self, text: str) -> Vector:
        """Return a symmetric embedding for arbitrary text."""

    def embed_query(self, text: str) -> Vector:
        """Return an embedding tuned for search queries."""

    def embed_document(self, text: str) -> Vector:
        """Return an embedding tuned for indexed passages."""

    def embed_chunks(self, chunks: Sequence[DocumentChunk]) -> Sequence[Embedding]:
        """Return embeddings for the provided chunks."""


class HashEmbeddingBackend:
    """Deterministic feature-hashed bag-of-words embeddings for tests and offline use."""

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()

    @property
    def model_name(self) -> str:
        return f"hash-{self._config.dim}"

    def _hash_to_vector(self, text: str) -> Vector:
        tokens = _TOKEN_RE.findall(text.lower()) or [text or "<empty>"]
        vector = [0.0] * self._config.dim
        for token in tokens:
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            index = int.from_bytes(digest[:4], "big") % self._config.dim
            sign = 1.0 if digest[4] % 2 == 0 else -1.0
            vector[index] += sign
        if self._config.normalize:
            norm = math.sqrt(sum(value * value for value in vector)) or 1.0
            vector = [value / norm for value in vector]
        return tuple(vector)

    def embed(self, text: str) -> Vector:
        return self._hash_to_vector(text)

    def embed_query(self, text: str) -> Vector:
        return self._hash_to_vector(text)

    def embed_document(self, text: str) -> Vector:
        return self._hash_to_vector(text)

    def embed_chunks(self, chunks: Sequence[DocumentChunk]) -> Sequence[Embedding]:
        return [Embedding(chunk=chunk, vector=self._hash_to_vector(chunk.text)) for chunk in chunks]


class HuggingFaceEmbeddingBackend:
    """Embedding provider backed by sentence-transformer models via LangChain."""

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()
        self._delegate = HashEmbeddingBackend(self._config)
        self._client: LangChainEmbeddings | None = None
        if not self._config.use_model:
            LOGGER.info("HuggingFaceEmbeddingBackend running in hash-only mode.")
            return
        try:
            model_kwargs = {"device": self._config.device} if self._config.device else {}
            self._client = HuggingFaceEmbeddings(
                model_name=self._config.model,
                model_kwargs=model_kwargs,
                encode_kwargs={"normalize_embeddings": self._config.normalize},
                cache_folder=self._config.cache_folder,
            )
        except Exception as exc:
            raise EmbeddingError(f"Failed to load embedding model {self._config.model}") from exc
        LOGGER.info("Loaded embedding model %s", self._config.model)

    @property
    def model_name(self) -> str:
        if self._client is None:
            return self._delegate.model_name
        return self._config.model

    def embed(self, text: str) -> Vector:
        if self._client is None:
            return self._delegate.embed(text)
        return self._run(lambda: self._client.embed_query(text))

    def embed_query(self, text: str) -> Vector:
        if self._client is None:
            return self._delegate.embed_query(text)
        instructed = f"{self._config.query_instruction}{text}" if self._config.query_instruction else text
        return self._run(lambda: self._client.embed_query(instructed))

    def embed_document(self, text: str) -> Vector:
        if self._client is None:
            return self._delegate.embed_document(text)
        return self._run(lambda: self._client.embed_documents([text])[0])

    def embed_chunks(self, chunks: Sequence[DocumentChunk]) -> Sequence[Embedding]:
        if not chunks:
            return []
        if self._client is None:
            return self._delegate.embed_chunks(chunks)
        try:
            vectors = self._client.embed_documents([chunk.text for chunk in chunks])
        except Exception as exc:
            raise EmbeddingError("Embedding provider failed for document batch") from exc
        if len(vectors) != len(chunks):
            LOGGER.error(
                "Embedding backend returned %d vectors for %d chunks", len(vectors), len(chunks)
            )
            raise EmbeddingError("Mismatch between number of chunks and embedding vectors")
        if vectors and len(vectors[0]) != self._config.dim:
            LOGGER.warning(
                "Embedding dim mismatch: configured=%d, actual=%d",
                self._config.dim,
                len(vectors[0]),
            )
        return [
            Embedding(chunk=chunk, vector=self._normalize(tuple(vector)))
            for chunk, vector in zip(chunks, vectors)
        ]

    def _run(self, call) -> Vector:
        try:
            vector = tuple(call())
        except Exception as exc:
            raise EmbeddingError("Embedding provider failed") from exc
        return self._normalize(vector)

    def _normalize(self, vector: Vector) -> Vector:
        if not self._config.normalize:
            return vector
        norm = math.sqrt(sum(value * value for value in vector)) or 1.0
        return tuple(value / norm for value in vector)
