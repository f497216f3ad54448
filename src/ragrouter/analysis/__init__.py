"""Query analysis."""

from .analyzer import (
    STOP_WORDS,
    QueryAnalyzer,
    classify_difficulty,
    extract_entities,
    extract_keywords,
    is_analytical,
)

__all__ = [
    "STOP_WORDS",
    "QueryAnalyzer",
    "classify_difficulty",
    "extract_entities",
    "extract_keywords",
    "is_analytical",
]
