"""Typed errors surfaced by the retrieval engine."""

from __future__ import annotations

from dataclasses import dataclass


class RagError(RuntimeError):
    """Base error carrying the strategy and query that produced it."""

    def __init__(self, message: str, *, strategy: str | None = None, query_id: str | None = None) -> None:
        super().__init__(message)
        self.strategy = strategy
        self.query_id = query_id

    def __str__(self) -> str:
        base = super().__str__()
        context = []
        if self.strategy:
            context.append(f"strategy={self.strategy}")
        if self.query_id:
            context.append(f"query_id={self.query_id}")
        if self.__cause__ is not None:
            context.append(f"cause={type(self.__cause__).__name__}: {self.__cause__}")
        return f"{base} ({', '.join(context)})" if context else base


class ProviderError(RagError):
    """Raised when an embedding or store backend is unavailable or erroring."""


class EmbeddingError(ProviderError):
    """Raised when the embedding provider fails to produce a vector."""


class StoreError(ProviderError):
    """Raised when a vector or graph store query fails."""


class RetrievalTimeoutError(ProviderError):
    """Raised when a retriever branch exceeds its time budget."""


class ConfigurationError(RagError):
    """Raised for unknown strategy/policy names or missing store handles."""


class ValidationError(RagError):
    """Raised for malformed queries, before any I/O happens."""


@dataclass(frozen=True)
class PartialFailure:
    """Record of one ensemble branch that failed while others succeeded."""

    strategy: str
    error_type: str
    message: str

    @classmethod
    def from_exception(cls, strategy: str, exc: BaseException) -> "PartialFailure":
        return cls(strategy=strategy, error_type=type(exc).__name__, message=str(exc))

    def to_dict(self) -> dict[str, str]:
        return {"strategy": self.strategy, "error_type": self.error_type, "message": self.message}


class EnsembleError(RagError):
    """Raised when every branch of an ensemble retrieval failed."""

    def __init__(self, message: str, failures: tuple[PartialFailure, ...], **kwargs: str | None) -> None:
        super().__init__(message, **kwargs)
        self.failures = failures


__all__ = [
    "ConfigurationError",
    "EmbeddingError",
    "EnsembleError",
    "PartialFailure",
    "ProviderError",
    "RagError",
    "RetrievalTimeoutError",
    "StoreError",
    "ValidationError",
]
