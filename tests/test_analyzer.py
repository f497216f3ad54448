from __future__ import annotations

import pytest

from ragrouter.analysis import QueryAnalyzer, classify_difficulty, extract_entities, extract_keywords, is_analytical
from ragrouter.models import Query, Strategy

SCENARIO_B = (
    "Analyze and compare the architectural trade-offs of microservices versus monoliths across "
    "twenty-five different dimensions of scalability, cost, and team structure"
)


def test_simple_question_is_easy_and_dense():
    analysis = QueryAnalyzer().analyze("What is machine learning?")
    assert analysis.type == "factual"
    assert analysis.difficulty == "easy"
    assert analysis.suggested_strategy is Strategy.RETRIEVE_READ
    assert analysis.confidence == 0.8
    assert analysis.complexity == pytest.approx(0.4)


def test_long_analytical_question_is_hard_and_reranked():
    analysis = QueryAnalyzer().analyze(SCENARIO_B)
    assert analysis.type == "analytical"
    assert analysis.difficulty == "hard"
    assert analysis.suggested_strategy is Strategy.TWO_STAGE_RERANK
    assert analysis.complexity == 1.0
    assert analysis.intent.primary == "analysis"
    assert analysis.intent.specificity == "specific"


@pytest.mark.parametrize("text", ["", "   ", "\n\t"])
def test_empty_text_yields_zero_confidence(text):
    analysis = QueryAnalyzer().analyze(text)
    assert analysis.confidence == 0.0
    assert analysis.difficulty == "easy"
    assert analysis.entities == ()


def test_analytical_stems_match_inflections():
    assert is_analytical("How do the two approaches compare?")
    assert is_analytical("Evaluating retrieval quality")
    assert is_analytical("an analysis of costs")
    assert is_analytical("Synthesise the findings")
    assert not is_analytical("What is a vector database?")


def test_difficulty_thresholds():
    assert classify_difficulty(" ".join(["word"] * 10)) == "easy"
    assert classify_difficulty(" ".join(["word"] * 11)) == "medium"
    assert classify_difficulty(" ".join(["word"] * 21)) == "hard"
    assert classify_difficulty("compare them") == "hard"


def test_entities_and_keywords():
    text = "Where did Ada Lovelace meet Charles Babbage and Ada Lovelace again?"
    assert extract_entities(text) == ["Where", "Ada Lovelace", "Charles Babbage"]
    keywords = extract_keywords("What is the role of the hippocampus in memory?")
    assert keywords == ["what", "role", "hippocampus", "memory"]


def test_intent_temporality():
    analyzer = QueryAnalyzer()
    assert analyzer.extract_intent("What is the latest release?").temporality == "current"
    assert analyzer.extract_intent("The history of Rome").temporality == "historical"
    assert analyzer.extract_intent("Forecast demand for solar").temporality == "future"
    assert analyzer.extract_intent("Define entropy").temporality == "timeless"


def test_select_strategy_honours_explicit_choice():
    analyzer = QueryAnalyzer()
    assert analyzer.select_strategy(Query(text=SCENARIO_B, strategy=Strategy.HYBRID)) is Strategy.HYBRID
    assert analyzer.select_strategy(Query(text=SCENARIO_B)) is Strategy.TWO_STAGE_RERANK


@pytest.mark.parametrize(
    ("text", "expected_type", "depth"),
    [
        ("how is tokenization related to embeddings", "relationship_traversal", 1),
        ("find the indirect path linked to the supplier", "relationship_traversal", 2),
        ("which authors are the most influential", "graph_analytics", 1),
        ("compare sparse and dense retrieval", "hybrid_search", 1),
        ("Who is Grace Hopper?", "entity_lookup", 1),
        ("what is machine learning", "semantic_search", 1),
    ],
)
def test_build_query_context(text, expected_type, depth):
    context = QueryAnalyzer().build_query_context(Query(text=text))
    assert context.query == text
    assert context.query_type == expected_type
    assert context.expected_traversal_depth == depth


def test_build_query_context_complexity_and_overrides():
    analyzer = QueryAnalyzer()
    simple = analyzer.build_query_context(Query(text="what is machine learning"))
    assert simple.complexity == "simple"
    hard = analyzer.build_query_context(Query(text=SCENARIO_B))
    assert hard.complexity == "complex"

    overridden = analyzer.build_query_context(
        Query(
            text="what is machine learning",
            metadata={"query_type": "relationship_traversal", "traversal_depth": 3},
        )
    )
    assert overridden.query_type == "relationship_traversal"
    assert overridden.expected_traversal_depth == 3

    analytics = analyzer.build_query_context(Query(text="which authors are the most influential"))
    assert analytics.requires_graph_analytics
