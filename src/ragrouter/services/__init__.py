"""Service layer orchestrations for ragrouter."""

from .bootstrap import build_chroma_client, build_rag_service
from .rag import BranchOutcome, RagService

__all__ = [
    "BranchOutcome",
    "RagService",
    "build_chroma_client",
    "build_rag_service",
]
