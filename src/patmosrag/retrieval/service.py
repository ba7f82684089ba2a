"""Hybrid retrieval orchestration over a vector store and a keyword index."""

from __future__ import annotations

import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Protocol, Sequence

from patmosrag.embeddings import ChunkRepository, EmbeddingBackend, VectorStore
from patmosrag.errors import SearchBackendError
from patmosrag.metrics.observability import PipelineMetrics, get_logger
from patmosrag.metrics.performance import PerformanceTimings
from patmosrag.models import MergedResult, SearchCandidate
from patmosrag.retrieval.intent import analyze_query_intent, weights_for_intent
from patmosrag.retrieval.keyword import KeywordIndex
from patmosrag.retrieval.merge import (
    HybridWeights,
    attach_chunks,
    diversify_results,
    merge_candidates,
    search_confidence,
)

SEMANTIC = "semantic"
KEYWORD = "keyword"


@dataclass(frozen=True)
class RetrievalConfig:
    """Configuration for hybrid retrieval."""

    top_k: int = 20
    max_top_k: int | None = 50
    weights: HybridWeights = field(default_factory=HybridWeights)
    adaptive_weights: bool = False
    min_semantic_score: float = 0.3
    min_keyword_score: float = 0.05
    max_chunks_per_document: int = 3
    timeout_seconds: float | None = 10.0


@dataclass(frozen=True)
class HybridSearchOutcome:
    """Ranked results plus how they were obtained."""

    results: Sequence[MergedResult]
    weights: HybridWeights
    degraded: bool = False
    failed_sources: tuple[str, ...] = ()
    semantic_count: int = 0
    keyword_count: int = 0
    strategy: str = "general"
    confidence: float = 0.0

    @property
    def source_types(self) -> list[str]:
        return sorted({result.chunk.source_type for result in self.results if result.chunk})


class Retriever(Protocol):
    """Retrieve ranked chunks for a question."""

    def search(
        self,
        question: str,
        *,
        top_k: int | None = None,
        timings: PerformanceTimings | None = None,
        config: RetrievalConfig | None = None,
        requester_id: str | None = None,
    ) -> HybridSearchOutcome:
        """Return the merged top-k results."""


class HybridRetriever:
    """Runs semantic and keyword search in parallel and merges the results."""

    def __init__(
        self,
        embedder: EmbeddingBackend,
        vector_store: VectorStore,
        keyword_index: KeywordIndex,
        *,
        repository: ChunkRepository | None = None,
        config: RetrievalConfig | None = None,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self._embedder = embedder
        self._vector_store = vector_store
        self._keyword_index = keyword_index
        self._repository = repository or vector_store
        self._config = config or RetrievalConfig()
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="hybrid-search")
        self._logger = get_logger("retrieval")

    def search(
        self,
        question: str,
        *,
        top_k: int | None = None,
        timings: PerformanceTimings | None = None,
        config: RetrievalConfig | None = None,
        requester_id: str | None = None,
    ) -> HybridSearchOutcome:
        cfg = config or self._config
        limit = top_k or cfg.top_k
        if cfg.max_top_k:
            limit = min(limit, cfg.max_top_k)
        limit = max(1, limit)

        weights = cfg.weights
        strategy = "general"
        if cfg.adaptive_weights:
            intent = analyze_query_intent(question)
            weights = weights_for_intent(intent, cfg.weights)
            strategy = intent.type

        start = time.perf_counter()
        semantic, keyword, failures = self._run_backends(question, limit, cfg)
        if timings is not None:
            timings.mark("search")
        if len(failures) == 2:
            self._logger.error("search.failed", question=question, causes={k: str(v) for k, v in failures.items()})
            raise SearchBackendError("Both search backends failed", failures)
        for source, exc in failures.items():
            PipelineMetrics.observe_degraded(source)
            self._logger.warning("search.degraded", failed_source=source, detail=str(exc))

        semantic = [c for c in semantic if c.score >= cfg.min_semantic_score]
        keyword = [c for c in keyword if c.score >= cfg.min_keyword_score]
        merged = merge_candidates(semantic, keyword, weights=weights)
        if timings is not None:
            timings.mark("rerank")

        chunks = self._repository.get_chunks([result.chunk_id for result in merged])
        hydrated = attach_chunks(merged, chunks)
        if len(hydrated) < len(merged):
            self._logger.warning("search.missing_chunks", missing=len(merged) - len(hydrated))
        results = diversify_results(hydrated, cfg.max_chunks_per_document)[:limit]
        if timings is not None:
            timings.mark("metadata")

        duration = time.perf_counter() - start
        PipelineMetrics.observe_retrieval(duration, len(results))
        outcome = HybridSearchOutcome(
            results=results,
            weights=weights,
            degraded=bool(failures),
            failed_sources=tuple(sorted(failures)),
            semantic_count=len(semantic),
            keyword_count=len(keyword),
            strategy=f"{strategy} ({weights.semantic:g}/{weights.keyword:g})",
            confidence=search_confidence(results),
        )
        self._logger.info(
            "search.complete",
            requester_id=requester_id,
            semantic_count=outcome.semantic_count,
            keyword_count=outcome.keyword_count,
            result_count=len(results),
            degraded=outcome.degraded,
            strategy=outcome.strategy,
            duration_seconds=duration,
        )
        return outcome

    def _semantic(self, question: str, limit: int) -> Sequence[SearchCandidate]:
        vector = self._embedder.embed_query(question)
        return list(self._vector_store.search(vector, limit))

    def _keyword(self, question: str, limit: int) -> Sequence[SearchCandidate]:
        return list(self._keyword_index.search(question, limit))

    def _run_backends(
        self,
        question: str,
        limit: int,
        cfg: RetrievalConfig,
    ) -> tuple[list[SearchCandidate], list[SearchCandidate], dict[str, BaseException]]:
        futures: dict[str, Future] = {
            SEMANTIC: self._executor.submit(self._semantic, question, limit),
            KEYWORD: self._executor.submit(self._keyword, question, limit),
        }
        results: dict[str, list[SearchCandidate]] = {SEMANTIC: [], KEYWORD: []}
        failures: dict[str, BaseException] = {}
        deadline = time.monotonic() + cfg.timeout_seconds if cfg.timeout_seconds else None
        for name, future in futures.items():
            remaining = max(deadline - time.monotonic(), 0.0) if deadline is not None else None
            try:
                results[name] = list(future.result(timeout=remaining))
            except Exception as exc:  # backend clients raise arbitrary transport errors
                future.cancel()
                failures[name] = exc
        return results[SEMANTIC], results[KEYWORD], failures

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)
