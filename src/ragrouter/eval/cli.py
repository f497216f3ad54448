"""CLI for evaluating ragrouter retrieval strategies."""

from __future__ import annotations

import argparse
import asyncio
import json
import statistics
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Sequence

import chromadb

from ragrouter.config import Settings, get_settings
from ragrouter.embeddings import EmbeddingConfig, HashEmbeddingBackend
from ragrouter.models import Query, Strategy
from ragrouter.services import RagService, build_rag_service


@dataclass(frozen=True)
class DocumentFixture:
    id: str
    title: str
    content: str
    metadata: Mapping[str, object]


@dataclass(frozen=True)
class QueryFixture:
    question: str
    relevant_document_ids: Sequence[str]


@dataclass(frozen=True)
class EvaluationResult:
    strategy: str
    total_queries: int
    hits: int
    recall_at_k: float
    mean_reciprocal_rank: float
    average_latency_ms: float
    fallbacks: int
    details: List[dict]

    def to_dict(self) -> dict:
        return {
            "strategy": self.strategy,
            "total_queries": self.total_queries,
            "hits": self.hits,
            "recall_at_k": self.recall_at_k,
            "mean_reciprocal_rank": self.mean_reciprocal_rank,
            "average_latency_ms": self.average_latency_ms,
            "fallbacks": self.fallbacks,
            "details": self.details,
        }


def load_dataset(path: Path) -> tuple[list[DocumentFixture], list[QueryFixture]]:
    data = json.loads(path.read_text(encoding="utf-8"))
    documents = [
        DocumentFixture(
            id=item["id"],
            title=item.get("title", ""),
            content=item["content"],
            metadata=item.get("metadata", {}),
        )
        for item in data["documents"]
    ]
    queries = [
        QueryFixture(
            question=item["question"],
            relevant_document_ids=item.get("relevant_document_ids", []),
        )
        for item in data["queries"]
    ]
    return documents, queries


def _build_service(settings: Settings) -> RagService:
    # Offline and deterministic: hash embeddings over a throwaway collection
    return build_rag_service(
        settings,
        chroma_client=chromadb.EphemeralClient(),
        embedding_provider=HashEmbeddingBackend(EmbeddingConfig(dim=settings.embedding_dim)),
    )


async def _evaluate(
    service: RagService,
    documents: Sequence[DocumentFixture],
    queries: Sequence[QueryFixture],
    *,
    top_k: int,
    strategy: Strategy | None,
    ensemble: Sequence[Strategy],
) -> list[dict]:
    for fixture in documents:
        await service.add_document(
            fixture.content,
            {**fixture.metadata, "title": fixture.title},
            document_id=fixture.id,
        )

    details: list[dict] = []
    for fixture in queries:
        query = Query(text=fixture.question, top_k=top_k)
        if ensemble:
            response = await service.ensemble_retrieve(query, ensemble)
        elif strategy is not None:
            response = await service.retrieve_with_strategy(query, strategy)
        else:
            response = await service.retrieve(query)
        retrieved = list(dict.fromkeys(result.document_id for result in response.results))
        details.append(
            {
                "question": fixture.question,
                "strategy": response.strategy.value,
                "retrieved": retrieved,
                "relevant": list(fixture.relevant_document_ids),
                "latency_ms": response.total_latency,
                "confidence": response.confidence,
                "fallback_used": response.debug_info.fallback_used,
            }
        )
    return details


def run_evaluation(
    dataset_path: Path,
    *,
    top_k: int = 3,
    strategy: Strategy | str | None = None,
    ensemble: Sequence[Strategy | str] = (),
    settings: Settings | None = None,
    service: RagService | None = None,
    json_out: Path | None = None,
    markdown_out: Path | None = None,
) -> EvaluationResult:
    settings = settings or get_settings()
    documents, queries = load_dataset(dataset_path)
    service = service or _build_service(settings)
    chosen = Strategy.parse(strategy) if strategy is not None else None
    members = [Strategy.parse(name) for name in ensemble]

    details = asyncio.run(
        _evaluate(service, documents, queries, top_k=top_k, strategy=chosen, ensemble=members)
    )

    hits = 0
    reciprocal_ranks: list[float] = []
    for item in details:
        relevant_set = set(item["relevant"])
        rank = None
        for index, doc_id in enumerate(item["retrieved"], start=1):
            if doc_id in relevant_set:
                rank = index
                break
        if rank is not None:
            hits += 1
            reciprocal_ranks.append(1 / rank)
        else:
            reciprocal_ranks.append(0.0)

    total = len(queries)
    if members:
        label = "ensemble(" + ",".join(member.value for member in members) + ")"
    else:
        label = chosen.value if chosen is not None else "auto"
    result = EvaluationResult(
        strategy=label,
        total_queries=total,
        hits=hits,
        recall_at_k=hits / total if total else 0.0,
        mean_reciprocal_rank=statistics.fmean(reciprocal_ranks) if reciprocal_ranks else 0.0,
        average_latency_ms=statistics.fmean(item["latency_ms"] for item in details) if details else 0.0,
        fallbacks=sum(1 for item in details if item["fallback_used"]),
        details=details,
    )

    if json_out:
        json_out.write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")
    if markdown_out:
        markdown_out.write_text(_format_markdown(result), encoding="utf-8")
    return result


def _format_markdown(result: EvaluationResult) -> str:
    lines = [
        "# ragrouter Evaluation Report",
        "",
        f"- Strategy: {result.strategy}",
        f"- Total queries: {result.total_queries}",
        f"- Hits: {result.hits}",
        f"- Recall@k: {result.recall_at_k:.2f}",
        f"- MRR: {result.mean_reciprocal_rank:.2f}",
        f"- Avg latency (ms): {result.average_latency_ms:.2f}",
        f"- Fallbacks: {result.fallbacks}",
        "",
        "| Question | Strategy | Retrieved | Relevant |",
        "| --- | --- | --- | --- |",
    ]
    for item in result.details:
        retrieved = ", ".join(item["retrieved"]) if item["retrieved"] else "-"
        relevant = ", ".join(item["relevant"]) if item["relevant"] else "-"
        lines.append(f"| {item['question']} | {item['strategy']} | {retrieved} | {relevant} |")
    return "\n".join(lines)


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Evaluate ragrouter retrieval strategies.")
    parser.add_argument(
        "--dataset",
        type=Path,
        default=Path("evaluations/fixtures/sample.json"),
        help="Path to evaluation dataset JSON file.",
    )
    parser.add_argument("--top-k", type=int, default=3, help="Number of results to evaluate per query")
    group = parser.add_mutually_exclusive_group()
    group.add_argument(
        "--strategy",
        type=str,
        default=None,
        choices=[s.value for s in Strategy if s is not Strategy.ENSEMBLE],
        help="Force one retrieval strategy (default: let the analyzer choose)",
    )
    group.add_argument(
        "--ensemble",
        type=str,
        default=None,
        help="Comma-separated strategies to run as an ensemble, e.g. retrieve_read,hybrid",
    )
    parser.add_argument("--json-out", type=Path, default=None, help="Optional path to write JSON report")
    parser.add_argument("--markdown-out", type=Path, default=None, help="Optional path to write Markdown report")
    parser.add_argument("--min-recall", type=float, default=None, help="Override recall threshold")
    parser.add_argument("--min-mrr", type=float, default=None, help="Override MRR threshold")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    settings = get_settings()
    min_recall = args.min_recall if args.min_recall is not None else settings.evaluation_min_recall
    min_mrr = args.min_mrr if args.min_mrr is not None else settings.evaluation_min_mrr
    ensemble = [name.strip() for name in args.ensemble.split(",") if name.strip()] if args.ensemble else []

    result = run_evaluation(
        args.dataset,
        top_k=args.top_k,
        strategy=args.strategy,
        ensemble=ensemble,
        settings=settings,
        json_out=args.json_out,
        markdown_out=args.markdown_out,
    )
    print(json.dumps(result.to_dict(), indent=2))

    if result.recall_at_k < min_recall or result.mean_reciprocal_rank < min_mrr:
        print(
            f"Evaluation failed thresholds (recall {result.recall_at_k:.2f} vs {min_recall}, "
            f"MRR {result.mean_reciprocal_rank:.2f} vs {min_mrr})",
            file=sys.stderr,
        )
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    sys.exit(main())
