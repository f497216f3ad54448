"""Vector store implementations."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, MutableMapping, Protocol, Sequence

import chromadb
from chromadb.api import ClientAPI
from chromadb.api.types import Documents, Embeddings as ChromaEmbeddings, IDs, Metadatas

from ragrouter.embeddings.service import EmbeddingProvider
from ragrouter.errors import StoreError
from ragrouter.models import ChunkGranularity, DocumentChunk, DocumentMetadata, QueryFilters, ScoredChunk


class VectorStore(Protocol):
    """Protocol for chunk vector persistence backends."""

    name: str

    def upsert(self, chunks: Sequence[DocumentChunk]) -> Sequence[str]:
        """Embed and persist the provided chunks."""

    def search(
        self,
        vector: Sequence[float],
        *,
        top_k: int,
        score_threshold: float = 0.0,
        granularity: ChunkGranularity | None = None,
        filters: QueryFilters | None = None,
    ) -> Sequence[ScoredChunk]:
        """Return up to ``top_k`` chunks scoring above the threshold, best first."""

    def neighbors(
        self,
        document_id: str,
        granularity: ChunkGranularity,
        chunk_index: int,
        radius: int = 1,
    ) -> Sequence[DocumentChunk]:
        """Return chunks within ``radius`` indexes of a chunk, in chunk-index order."""

    def find_document_by_hash(self, content_hash: str) -> str | None:
        """Return the id of an indexed document with this content hash, if any."""

    def delete_document(self, document_id: str) -> None:
        """Remove every chunk of a document."""

    def reset(self) -> None:
        """Remove all stored chunks."""

    def count(self) -> int:
        """Return total number of stored chunks."""

    def count_by_document(self) -> Mapping[str, int]:
        """Return a mapping of document_id to chunk count."""

    def ping(self) -> bool:
        """Return True when the backend answers."""


class ChromaVectorStore:
    """Chroma-backed vector store using cosine space."""

    def __init__(
        self,
        embedding_provider: EmbeddingProvider,
        collection_name: str = "ragrouter",
        *,
        client: ClientAPI | None = None,
        persist_directory: str | Path | None = None,
    ) -> None:
        if client is not None:
            self._client = client
        elif persist_directory is not None:
            self._client = chromadb.PersistentClient(path=str(persist_directory))
        else:
            self._client = chromadb.EphemeralClient()
        self._collection = self._client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"},
        )
        self._provider = embedding_provider
        self.name = collection_name

    def upsert(self, chunks: Sequence[DocumentChunk]) -> Sequence[str]:
        if not chunks:
            return []
        embeddings = self._provider.embed_chunks(chunks)
        ids: IDs = [embedding.chunk.chunk_id for embedding in embeddings]
        documents: Documents = [embedding.chunk.text for embedding in embeddings]
        metadatas: Metadatas = [self._serialize_chunk(embedding.chunk) for embedding in embeddings]
        vectors: ChromaEmbeddings = [list(embedding.vector) for embedding in embeddings]
        try:
            self._collection.upsert(ids=ids, documents=documents, embeddings=vectors, metadatas=metadatas)
        except Exception as exc:
            raise StoreError(f"Chroma upsert failed for collection {self.name}") from exc
        return list(ids)

    def search(
        self,
        vector: Sequence[float],
        *,
        top_k: int,
        score_threshold: float = 0.0,
        granularity: ChunkGranularity | None = None,
        filters: QueryFilters | None = None,
    ) -> Sequence[ScoredChunk]:
        if top_k <= 0:
            return []
        where = self._build_where(granularity, filters)
        try:
            results = self._collection.query(
                query_embeddings=[list(vector)],
                n_results=top_k,
                where=where,
                include=["documents", "metadatas", "distances"],
            )
        except Exception as exc:
            raise StoreError(f"Chroma query failed for collection {self.name}") from exc
        scored = self._deserialize_results(results)
        return [item for item in scored if item.score > score_threshold][:top_k]

    def neighbors(
        self,
        document_id: str,
        granularity: ChunkGranularity,
        chunk_index: int,
        radius: int = 1,
    ) -> Sequence[DocumentChunk]:
        where = {
            "$and": [
                {"document_id": document_id},
                {"granularity": granularity},
                {"chunk_index": {"$gte": chunk_index - radius}},
                {"chunk_index": {"$lte": chunk_index + radius}},
            ]
        }
        try:
            batch = self._collection.get(where=where, include=["documents", "metadatas"])
        except Exception as exc:
            raise StoreError(f"Chroma neighbour lookup failed for {document_id}") from exc
        ids = batch.get("ids") or []
        documents = batch.get("documents") or []
        metadatas = batch.get("metadatas") or []
        chunks = [
            self._deserialize_chunk(chunk_id, document, metadata)
            for chunk_id, document, metadata in zip(ids, documents, metadatas, strict=False)
        ]
        return sorted(chunks, key=lambda chunk: chunk.chunk_index)

    def find_document_by_hash(self, content_hash: str) -> str | None:
        try:
            batch = self._collection.get(where={"content_hash": content_hash}, include=["metadatas"], limit=1)
        except Exception as exc:
            raise StoreError("Chroma lookup by content hash failed") from exc
        metadatas = batch.get("metadatas") or []
        if not metadatas:
            return None
        return str(metadatas[0].get("document_id", "")) or None

    def delete_document(self, document_id: str) -> None:
        try:
            self._collection.delete(where={"document_id": document_id})
        except Exception as exc:
            raise StoreError(f"Chroma delete failed for {document_id}") from exc

    def reset(self) -> None:
        ids = self._collection.get(include=[]).get("ids") or []
        if ids:
            self._collection.delete(ids=ids)

    def count(self) -> int:
        try:
            return int(self._collection.count())
        except Exception:
            return 0

    def count_by_document(self) -> Mapping[str, int]:
        counts: dict[str, int] = {}
        # paginate through metadatas only
        limit = 1000
        offset = 0
        while True:
            batch = self._collection.get(include=["metadatas"], limit=limit, offset=offset)
            metadatas = batch.get("metadatas") or []
            if not metadatas:
                break
            for md in metadatas:
                if not isinstance(md, dict):
                    continue
                doc_id = str(md.get("document_id", "")) or "unknown"
                counts[doc_id] = counts.get(doc_id, 0) + 1
            if len(metadatas) < limit:
                break
            offset += limit
        return counts

    def ping(self) -> bool:
        try:
            self._client.heartbeat()
            return True
        except Exception:
            return False

    @staticmethod
    def _build_where(granularity: ChunkGranularity | None, filters: QueryFilters | None) -> dict[str, Any] | None:
        clauses: list[dict[str, Any]] = []
        if granularity:
            clauses.append({"granularity": granularity})
        if filters is not None:
            if filters.date_range:
                start, end = filters.date_range
                clauses.append({"created_ts": {"$gte": _timestamp(start)}})
                clauses.append({"created_ts": {"$lte": _timestamp(end)}})
            if filters.sources:
                clauses.append({"source": {"$in": list(filters.sources)}})
            if filters.content_types:
                clauses.append({"content_type": {"$in": list(filters.content_types)}})
            if filters.languages:
                clauses.append({"language": {"$in": list(filters.languages)}})
            if filters.document_ids:
                clauses.append({"document_id": {"$in": list(filters.document_ids)}})
        if not clauses:
            return None
        if len(clauses) == 1:
            return clauses[0]
        return {"$and": clauses}

    def _serialize_chunk(self, chunk: DocumentChunk) -> MutableMapping[str, object]:
        doc = chunk.document_metadata
        metadata: MutableMapping[str, object] = {
            "document_id": doc.document_id,
            "title": doc.title,
            "chunk_index": chunk.chunk_index,
            "granularity": chunk.granularity,
            "start_offset": chunk.start_offset,
            "end_offset": chunk.end_offset,
            "created_ts": _timestamp(doc.created_at),
            "doc_extra": self._dumps(doc.extra),
            "chunk_metadata": self._dumps(chunk.chunk_metadata),
        }
        # Chroma rejects None metadata values
        for key, value in (
            ("source", doc.source),
            ("content_type", doc.content_type),
            ("language", doc.language),
            ("content_hash", doc.content_hash),
        ):
            if value is not None:
                metadata[key] = value
        return metadata

    def _deserialize_results(self, results: Mapping[str, object]) -> Sequence[ScoredChunk]:
        ids = self._first(results.get("ids", []))
        documents = self._first(results.get("documents", []))
        metadatas = self._first(results.get("metadatas", []))
        distances = self._first(results.get("distances", []))
        retrieved: list[ScoredChunk] = []
        if not ids or not documents or not metadatas:
            return retrieved
        for idx, doc, metadata, distance in zip(ids, documents, metadatas, distances or [], strict=False):
            chunk = self._deserialize_chunk(idx, doc, metadata)
            retrieved.append(ScoredChunk(chunk=chunk, score=1.0 - float(distance)))
        return retrieved

    def _deserialize_chunk(self, chunk_id: str, document: str, metadata: Mapping[str, object]) -> DocumentChunk:
        created_ts = metadata.get("created_ts")
        document_metadata = DocumentMetadata(
            document_id=str(metadata.get("document_id", "")),
            title=str(metadata.get("title", "")),
            source=_optional_str(metadata.get("source")),
            content_type=_optional_str(metadata.get("content_type")),
            language=_optional_str(metadata.get("language")),
            content_hash=_optional_str(metadata.get("content_hash")),
            created_at=(
                datetime.fromtimestamp(float(created_ts), tz=timezone.utc)
                if isinstance(created_ts, (int, float))
                else datetime.now(timezone.utc)
            ),
            extra=self._loads_dict(metadata.get("doc_extra")),
        )
        granularity = "fine" if metadata.get("granularity") == "fine" else "coarse"
        return DocumentChunk(
            chunk_id=chunk_id,
            text=document or "",
            document_metadata=document_metadata,
            chunk_index=int(metadata.get("chunk_index", 0)),
            granularity=granularity,
            start_offset=int(metadata.get("start_offset", 0)),
            end_offset=int(metadata.get("end_offset", 0)),
            chunk_metadata=self._loads_dict(metadata.get("chunk_metadata")),
        )

    @staticmethod
    def _first(value: object) -> Iterable:
        if isinstance(value, list):
            return value[0] if value else []
        return []

    @staticmethod
    def _dumps(value: object) -> str:
        try:
            return json.dumps(value, default=str)
        except TypeError:
            return json.dumps({}, default=str)

    @staticmethod
    def _loads_dict(value: object) -> Dict[str, object]:
        if isinstance(value, str) and value:
            try:
                loaded = json.loads(value)
                if isinstance(loaded, dict):
                    return loaded
            except json.JSONDecodeError:
                return {}
        if isinstance(value, Mapping):
            return dict(value)
        return {}


def _timestamp(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def _optional_str(value: object) -> str | None:
    return str(value) if value is not None else None
