"""Two-tier document chunking for the retrieval engine."""

from __future__ import annotations

import hashlib
import math
import re
import time
import unicodedata
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Sequence
from uuid import NAMESPACE_URL, uuid5

from langchain_text_splitters import RecursiveCharacterTextSplitter

from ragrouter.metrics.observability import PipelineMetrics, get_logger
from ragrouter.models import ChunkGranularity, DocumentChunk, DocumentMetadata

_RESERVED_METADATA = {"document_id", "title", "source", "content_type", "language"}


class IngestionError(RuntimeError):
    """Raised when a document cannot be chunked."""


@dataclass(frozen=True)
class ChunkingConfig:
    """Chunk sizes, in characters, for each granularity tier."""

    coarse_chunk_size: int = 1000
    fine_chunk_size: int = 200
    chunk_overlap: int = 50


@dataclass(frozen=True)
class ChunkedDocument:
    metadata: DocumentMetadata
    coarse: Sequence[DocumentChunk]
    fine: Sequence[DocumentChunk]

    @property
    def chunks(self) -> Sequence[DocumentChunk]:
        return [*self.coarse, *self.fine]


def normalize_text(raw: str) -> str:
    normalized = unicodedata.normalize("NFKC", raw)
    normalized = normalized.replace("\u00a0", " ")
    normalized = re.sub(r"[ \t]+", " ", normalized)
    normalized = re.sub(r"\n{3,}", "\n\n", normalized)
    return normalized.strip()


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


class ChunkingService:
    """Split documents into coarse and fine tiers with LangChain's recursive splitter."""

    _logger = get_logger("ingestion")

    def __init__(self, config: ChunkingConfig | None = None) -> None:
        self._config = config or ChunkingConfig()
        self._splitters: Dict[ChunkGranularity, RecursiveCharacterTextSplitter] = {
            "coarse": RecursiveCharacterTextSplitter(
                chunk_size=self._config.coarse_chunk_size,
                chunk_overlap=min(self._config.chunk_overlap, self._config.coarse_chunk_size - 1),
                add_start_index=True,
            ),
            "fine": RecursiveCharacterTextSplitter(
                chunk_size=self._config.fine_chunk_size,
                chunk_overlap=min(self._config.chunk_overlap, self._config.fine_chunk_size - 1),
                add_start_index=True,
            ),
        }

    def build_metadata(
        self,
        content: str,
        metadata: Mapping[str, Any] | None = None,
        *,
        document_id: str | None = None,
    ) -> DocumentMetadata:
        metadata = dict(metadata or {})
        digest = content_hash(content)
        doc_id = document_id or str(metadata.get("document_id") or "") or f"doc_{uuid5(NAMESPACE_URL, digest).hex}"
        return DocumentMetadata(
            document_id=doc_id,
            title=str(metadata.get("title") or "Untitled Document"),
            source=metadata.get("source"),
            content_type=metadata.get("content_type"),
            language=metadata.get("language"),
            content_hash=digest,
            extra={key: value for key, value in metadata.items() if key not in _RESERVED_METADATA},
        )

    def chunk(
        self,
        content: str,
        metadata: Mapping[str, Any] | None = None,
        *,
        document_id: str | None = None,
    ) -> ChunkedDocument:
        text = normalize_text(content)
        if not text:
            raise IngestionError("Document content is empty")

        start = time.perf_counter()
        document_metadata = self.build_metadata(content, metadata, document_id=document_id)
        coarse = self._split(text, document_metadata, "coarse")
        fine = self._split(text, document_metadata, "fine", parents=coarse)

        duration = time.perf_counter() - start
        PipelineMetrics.observe_ingestion(duration, {"coarse": len(coarse), "fine": len(fine)})
        self._logger.info(
            "ingestion.chunked",
            document_id=document_metadata.document_id,
            coarse_count=len(coarse),
            fine_count=len(fine),
            duration_seconds=duration,
        )
        return ChunkedDocument(metadata=document_metadata, coarse=coarse, fine=fine)

    def _split(
        self,
        text: str,
        document_metadata: DocumentMetadata,
        granularity: ChunkGranularity,
        parents: Sequence[DocumentChunk] = (),
    ) -> List[DocumentChunk]:
        splits = self._splitters[granularity].create_documents([text])
        chunks: List[DocumentChunk] = []
        for index, split in enumerate(splits):
            start_offset = int(split.metadata.get("start_index", 0))
            if start_offset < 0:
                start_offset = text.find(split.page_content)
            end_offset = start_offset + len(split.page_content)
            chunk_metadata: Dict[str, object] = {"tokens": estimate_tokens(split.page_content)}
            parent = _parent_for(start_offset, parents)
            if parent is not None:
                chunk_metadata["parent_chunk_id"] = parent.chunk_id
            chunks.append(
                DocumentChunk(
                    chunk_id=f"{document_metadata.document_id}-{granularity}-{index}",
                    text=split.page_content,
                    document_metadata=document_metadata,
                    chunk_index=index,
                    granularity=granularity,
                    start_offset=start_offset,
                    end_offset=end_offset,
                    chunk_metadata=chunk_metadata,
                )
            )
        return chunks


def _parent_for(offset: int, parents: Sequence[DocumentChunk]) -> DocumentChunk | None:
    for parent in parents:
        if parent.start_offset <= offset < parent.end_offset:
            return parent
    return None
