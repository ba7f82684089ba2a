"""CLI benchmarking PatmosRAG retrieval quality and response-cache behaviour."""

from __future__ import annotations

import argparse
import json
import statistics
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Mapping, Sequence

import chromadb

from patmosrag.cache import InMemoryResponseCache, QueryNormalizer
from patmosrag.config import Settings, get_settings
from patmosrag.embeddings import ChromaVectorStore, EmbeddingConfig, HashEmbeddingBackend
from patmosrag.models import Answer, DocumentChunk, DocumentMetadata, parse_source_metadata
from patmosrag.retrieval import HybridRetriever, HybridWeights, LexicalKeywordIndex, RetrievalConfig
from patmosrag.services.generation import TemplateGenerator
from patmosrag.services.query import PromptBuilder, QueryService


@dataclass(frozen=True)
class QueryFixture:
    question: str
    relevant_document_ids: Sequence[str]
    requester_id: str = "bench"


@dataclass(frozen=True)
class BenchmarkResult:
    total_queries: int
    hits: int
    recall_at_k: float
    mean_reciprocal_rank: float
    cache_hit_ratio: float
    cold_latency_ms: float
    warm_latency_ms: float
    cold_ftl_ms: float
    warm_ftl_ms: float
    degraded: int = 0
    details: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total_queries": self.total_queries,
            "hits": self.hits,
            "recall_at_k": self.recall_at_k,
            "mean_reciprocal_rank": self.mean_reciprocal_rank,
            "cache_hit_ratio": self.cache_hit_ratio,
            "cold_latency_ms": self.cold_latency_ms,
            "warm_latency_ms": self.warm_latency_ms,
            "cold_ftl_ms": self.cold_ftl_ms,
            "warm_ftl_ms": self.warm_ftl_ms,
            "degraded": self.degraded,
            "details": self.details,
        }


def _chunk_from_fixture(item: Mapping[str, Any]) -> DocumentChunk:
    source_type = item.get("source_type", "upload")
    return DocumentChunk(
        chunk_id=item["chunk_id"],
        text=item["text"],
        document=DocumentMetadata(
            document_id=item["document_id"],
            title=item.get("title", ""),
            author=item.get("author"),
        ),
        source_type=source_type,
        source_metadata=parse_source_metadata(source_type, item.get("source_metadata")),
        order=int(item.get("order", 0)),
        token_count=len(item["text"].split()),
    )


def load_fixture(path: Path) -> tuple[list[DocumentChunk], list[QueryFixture]]:
    data = json.loads(path.read_text(encoding="utf-8"))
    chunks = [_chunk_from_fixture(item) for item in data["chunks"]]
    queries = [
        QueryFixture(
            question=item["question"],
            relevant_document_ids=item.get("relevant_document_ids", []),
            requester_id=item.get("requester_id", "bench"),
        )
        for item in data["queries"]
    ]
    return chunks, queries


def build_service(chunks: Sequence[DocumentChunk], settings: Settings, *, top_k: int) -> QueryService:
    backend = HashEmbeddingBackend(EmbeddingConfig(dim=settings.embedding_dim))
    store = ChromaVectorStore(backend, collection_name="benchmark", client=chromadb.EphemeralClient())
    store.reset()
    store.upsert(chunks)
    keyword_index = LexicalKeywordIndex()
    keyword_index.upsert(chunks)
    retriever = HybridRetriever(
        backend,
        store,
        keyword_index,
        repository=keyword_index,
        config=RetrievalConfig(
            top_k=top_k,
            max_top_k=settings.search_max_top_k,
            weights=HybridWeights(semantic=settings.hybrid_semantic_weight, keyword=settings.hybrid_keyword_weight),
            adaptive_weights=settings.hybrid_adaptive_weights,
            min_semantic_score=settings.min_semantic_score,
            min_keyword_score=settings.min_keyword_score,
            max_chunks_per_document=settings.max_chunks_per_document,
        ),
    )
    return QueryService(
        retriever,
        TemplateGenerator(),
        PromptBuilder(),
        cache=InMemoryResponseCache(max_entries=max(len(chunks), 1) * 4, ttl_seconds=None),
        normalizer=QueryNormalizer(version=settings.cache_version, unit=settings.cache_freshness_unit),
    )


def _reciprocal_rank(answer: Answer, relevant: Sequence[str]) -> tuple[list[str], float]:
    retrieved = [citation.document_id for citation in answer.citations]
    relevant_set = set(relevant)
    for index, doc_id in enumerate(retrieved, start=1):
        if doc_id in relevant_set:
            return retrieved, 1 / index
    return retrieved, 0.0


def _mean(values: Sequence[float]) -> float:
    return statistics.fmean(values) if values else 0.0


def run_benchmark(
    fixture_path: Path,
    *,
    top_k: int = 3,
    settings: Settings | None = None,
    json_out: Path | None = None,
    markdown_out: Path | None = None,
) -> BenchmarkResult:
    """Answer every query twice (cold, then warm) against a fresh in-memory pipeline."""

    settings = settings or get_settings()
    chunks, queries = load_fixture(fixture_path)
    service = build_service(chunks, settings, top_k=top_k)

    cold: list[Answer] = []
    for index, query in enumerate(queries):
        cold.append(service.answer(query.question, requester_id=query.requester_id, session_id=f"bench-{index}"))
    warm: list[Answer] = []
    for index, query in enumerate(queries):
        warm.append(service.answer(query.question, requester_id=query.requester_id, session_id=f"bench-{index}"))

    hits = 0
    reciprocal_ranks: list[float] = []
    details: list[dict] = []
    for query, first, second in zip(queries, cold, warm, strict=True):
        retrieved, rr = _reciprocal_rank(first, query.relevant_document_ids)
        reciprocal_ranks.append(rr)
        if rr > 0:
            hits += 1
        details.append(
            {
                "question": query.question,
                "retrieved": retrieved,
                "relevant": list(query.relevant_document_ids),
                "cold_latency_ms": first.latency_ms,
                "warm_latency_ms": second.latency_ms,
                "warm_cache_hit": second.cache_hit,
                "degraded": first.degraded,
            },
        )

    total = len(queries)
    result = BenchmarkResult(
        total_queries=total,
        hits=hits,
        recall_at_k=hits / total if total else 0.0,
        mean_reciprocal_rank=_mean(reciprocal_ranks),
        cache_hit_ratio=sum(1 for answer in warm if answer.cache_hit) / total if total else 0.0,
        cold_latency_ms=_mean([answer.latency_ms for answer in cold]),
        warm_latency_ms=_mean([answer.latency_ms for answer in warm]),
        cold_ftl_ms=_mean([answer.metrics.ftl_ms for answer in cold if answer.metrics]),
        warm_ftl_ms=_mean([answer.metrics.ftl_ms for answer in warm if answer.metrics]),
        degraded=sum(1 for answer in cold if answer.degraded),
        details=details,
    )

    if json_out:
        json_out.write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")
    if markdown_out:
        markdown_out.write_text(_format_markdown(result), encoding="utf-8")
    return result


def _format_markdown(result: BenchmarkResult) -> str:
    lines = [
        "# PatmosRAG Benchmark Report",
        "",
        f"- Total queries: {result.total_queries}",
        f"- Hits: {result.hits}",
        f"- Recall@k: {result.recall_at_k:.2f}",
        f"- MRR: {result.mean_reciprocal_rank:.2f}",
        f"- Cache hit ratio (warm): {result.cache_hit_ratio:.2f}",
        f"- Avg latency cold/warm (ms): {result.cold_latency_ms:.2f} / {result.warm_latency_ms:.2f}",
        f"- Avg FTL cold/warm (ms): {result.cold_ftl_ms:.2f} / {result.warm_ftl_ms:.2f}",
        "",
        "| Question | Retrieved | Relevant | Warm hit |",
        "| --- | --- | --- | --- |",
    ]
    for item in result.details:
        retrieved = ", ".join(item["retrieved"]) if item["retrieved"] else "-"
        relevant = ", ".join(item["relevant"]) if item["relevant"] else "-"
        lines.append(f"| {item['question']} | {retrieved} | {relevant} | {'yes' if item['warm_cache_hit'] else 'no'} |")
    return "\n".join(lines)


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Benchmark PatmosRAG hybrid retrieval and response caching.")
    parser.add_argument(
        "--fixture",
        type=Path,
        default=Path("evaluations/fixtures/sample.json"),
        help="Path to a JSON fixture with chunks and queries.",
    )
    parser.add_argument("--top-k", type=int, default=3, help="Retriever top-k value to evaluate")
    parser.add_argument("--json-out", type=Path, default=None, help="Optional path to write JSON report")
    parser.add_argument("--markdown-out", type=Path, default=None, help="Optional path to write Markdown report")
    parser.add_argument("--min-recall", type=float, default=None, help="Override recall threshold")
    parser.add_argument("--min-mrr", type=float, default=None, help="Override MRR threshold")
    parser.add_argument("--min-hit-ratio", type=float, default=0.0, help="Minimum warm-pass cache hit ratio")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    settings = get_settings()
    min_recall = args.min_recall if args.min_recall is not None else settings.evaluation_min_recall
    min_mrr = args.min_mrr if args.min_mrr is not None else settings.evaluation_min_mrr

    result = run_benchmark(
        args.fixture,
        top_k=args.top_k,
        settings=settings,
        json_out=args.json_out,
        markdown_out=args.markdown_out,
    )
    print(json.dumps(result.to_dict(), indent=2))

    if (
        result.recall_at_k < min_recall
        or result.mean_reciprocal_rank < min_mrr
        or result.cache_hit_ratio < args.min_hit_ratio
    ):
        print(
            f"Benchmark failed thresholds (recall {result.recall_at_k:.2f} vs {min_recall}, "
            f"MRR {result.mean_reciprocal_rank:.2f} vs {min_mrr}, "
            f"hit ratio {result.cache_hit_ratio:.2f} vs {args.min_hit_ratio})",
            file=sys.stderr,
        )
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    sys.exit(main())
