"""Evaluation harness for ragrouter retrieval strategies."""

from .cli import EvaluationResult, main, run_evaluation

__all__ = ["EvaluationResult", "main", "run_evaluation"]
