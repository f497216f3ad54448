"""Rule-based query analysis.

Every function here is a pure function of the query text. Nothing raises on
odd input: empty or whitespace-only text produces a valid analysis with zero
confidence.
"""

from __future__ import annotations

import re
from typing import Sequence

from ragrouter.models import Difficulty, Query, QueryAnalysis, QueryIntent, QueryType, Strategy
from ragrouter.routing.router import Complexity, ContextQueryType, QueryContext, QueryContextBuilder

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by",
        "is", "are", "was", "were", "be", "been", "being", "have", "has", "had", "do", "does",
        "did", "will", "would", "could", "should",
    }
)

_ANALYTICAL_RE = re.compile(r"\b(analy[sz]\w*|compar\w*|synthesi[sz]\w*|evaluat\w*)\b", re.IGNORECASE)
_ENTITY_RE = re.compile(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\b")
_WORD_RE = re.compile(r"\b\w+\b")

_RELATIONSHIP_PHRASES = ("related to", "connected", "relationship between", "depends on", "linked")
_GRAPH_ANALYTICS_PHRASES = ("most connected", "central", "centrality", "community", "influential")
_DEEP_TRAVERSAL_TERMS = ("indirect", "transitive", "path")

_CURRENT_RE = re.compile(r"\b(current|currently|latest|today|now|recent|recently)\b", re.IGNORECASE)
_HISTORICAL_RE = re.compile(r"\b(history|historical|historically|ancient|originally|formerly)\b", re.IGNORECASE)
_FUTURE_RE = re.compile(r"\b(future|upcoming|predict|forecast|next year)\b", re.IGNORECASE)

_COMPLEXITY_BY_DIFFICULTY: dict[str, Complexity] = {"easy": "simple", "medium": "medium", "hard": "complex"}


def _word_count(text: str) -> int:
    return len(text.split())


def is_analytical(text: str) -> bool:
    return bool(_ANALYTICAL_RE.search(text))


def extract_entities(text: str) -> list[str]:
    return list(dict.fromkeys(_ENTITY_RE.findall(text)))


def extract_keywords(text: str) -> list[str]:
    words = _WORD_RE.findall(text.lower())
    return [word for word in words if word not in STOP_WORDS and len(word) > 2]


def classify_difficulty(text: str) -> Difficulty:
    word_count = _word_count(text)
    if word_count > 20 or is_analytical(text):
        return "hard"
    if word_count > 10:
        return "medium"
    return "easy"


class QueryAnalyzer:
    """Classifies queries into type, difficulty and intent and proposes a strategy."""

    def analyze(self, text: str) -> QueryAnalysis:
        if not text or not text.strip():
            return QueryAnalysis(
                type="factual",
                difficulty="easy",
                complexity=0.0,
                entities=(),
                keywords=(),
                intent=QueryIntent(),
                suggested_strategy=Strategy.RETRIEVE_READ,
                confidence=0.0,
            )
        word_count = _word_count(text)
        analytical = is_analytical(text)
        query_type: QueryType = "analytical" if analytical else "factual"
        return QueryAnalysis(
            type=query_type,
            difficulty=classify_difficulty(text),
            complexity=min(word_count / 10, 1.0),
            entities=tuple(extract_entities(text)),
            keywords=tuple(extract_keywords(text)),
            intent=self.extract_intent(text),
            suggested_strategy=Strategy.TWO_STAGE_RERANK if analytical else Strategy.RETRIEVE_READ,
            confidence=0.8,
        )

    def extract_intent(self, text: str) -> QueryIntent:
        if _CURRENT_RE.search(text):
            temporality = "current"
        elif _HISTORICAL_RE.search(text):
            temporality = "historical"
        elif _FUTURE_RE.search(text):
            temporality = "future"
        else:
            temporality = "timeless"
        return QueryIntent(
            primary="analysis" if is_analytical(text) else "information_retrieval",
            domain="general",
            temporality=temporality,
            specificity="specific" if _word_count(text) > 15 else "general",
        )

    def select_strategy(self, query: Query) -> Strategy:
        if query.strategy is not None:
            return query.strategy
        return self.analyze(query.text).suggested_strategy

    def build_query_context(self, query: Query, analysis: QueryAnalysis | None = None) -> QueryContext:
        """Derive the router's view of a query from its text and analysis."""

        analysis = analysis or self.analyze(query.text)
        lowered = query.text.lower()
        requires_analytics = _contains_any(lowered, _GRAPH_ANALYTICS_PHRASES)

        query_type: ContextQueryType
        if _contains_any(lowered, _RELATIONSHIP_PHRASES):
            query_type = "relationship_traversal"
        elif requires_analytics:
            query_type = "graph_analytics"
        elif analysis.type == "analytical":
            query_type = "hybrid_search"
        elif analysis.entities and analysis.difficulty == "easy":
            query_type = "entity_lookup"
        else:
            query_type = "semantic_search"
        depth = 2 if _contains_any(lowered, _DEEP_TRAVERSAL_TERMS) else 1

        override_type = query.metadata.get("query_type")
        if override_type:
            query_type = override_type
        override_depth = query.metadata.get("traversal_depth")
        if override_depth is not None:
            depth = int(override_depth)

        return (
            QueryContextBuilder()
            .query(query.text)
            .type(query_type)
            .complexity(_COMPLEXITY_BY_DIFFICULTY[analysis.difficulty])
            .traversal_depth(depth)
            .requires_graph_analytics(requires_analytics)
            .build()
        )


def _contains_any(text: str, phrases: Sequence[str]) -> bool:
    return any(phrase in text for phrase in phrases)
