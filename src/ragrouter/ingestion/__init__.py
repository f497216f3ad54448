"""Document chunking pipeline."""

from .service import (
    ChunkedDocument,
    ChunkingConfig,
    ChunkingService,
    IngestionError,
    content_hash,
    estimate_tokens,
    normalize_text,
)

__all__ = [
    "ChunkedDocument",
    "ChunkingConfig",
    "ChunkingService",
    "IngestionError",
    "content_hash",
    "estimate_tokens",
    "normalize_text",
]
