"""Sampled shadow retrieval runs for comparing retrieval configurations."""

from __future__ import annotations

import random
from concurrent.futures import Future, ThreadPoolExecutor

from patmosrag.metrics.observability import PipelineMetrics, get_logger
from patmosrag.metrics.performance import ShadowRunMetrics, calculate_chunk_overlap, should_run_shadow_test
from patmosrag.retrieval.service import HybridSearchOutcome, RetrievalConfig, Retriever


def _document_count(outcome: HybridSearchOutcome) -> int:
    return len({result.chunk.document.document_id for result in outcome.results if result.chunk})


class ShadowRunner:
    """Runs an alternate retrieval configuration off the request path.

    The shadow outcome is only logged and measured; callers never see it and a
    failing shadow run is swallowed after logging.
    """

    def __init__(
        self,
        retriever: Retriever,
        shadow_config: RetrievalConfig,
        *,
        sample_rate: float = 0.02,
        executor: ThreadPoolExecutor | None = None,
        max_workers: int = 2,
        rng: random.Random | None = None,
    ) -> None:
        self._retriever = retriever
        self._shadow_config = shadow_config
        self._sample_rate = sample_rate
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="shadow-run")
        self._rng = rng
        self._logger = get_logger("shadow")

    def maybe_run(
        self,
        question: str,
        main: HybridSearchOutcome,
        *,
        main_top_k: int,
        requester_id: str = "",
        session_id: str = "",
    ) -> Future | None:
        if not should_run_shadow_test(self._sample_rate, self._rng):
            return None
        return self._executor.submit(self._run, question, main, main_top_k, requester_id, session_id)

    def _run(
        self,
        question: str,
        main: HybridSearchOutcome,
        main_top_k: int,
        requester_id: str,
        session_id: str,
    ) -> ShadowRunMetrics | None:
        try:
            shadow = self._retriever.search(question, config=self._shadow_config, requester_id=requester_id or None)
        except Exception as exc:  # shadow failures must never reach the user
            self._logger.warning("shadow.failed", question=question, detail=str(exc))
            return None
        overlap = calculate_chunk_overlap(
            [result.chunk_id for result in shadow.results],
            [result.chunk_id for result in main.results],
        )
        metrics = ShadowRunMetrics(
            requester_id=requester_id,
            session_id=session_id,
            query=question,
            overlap=overlap,
            citation_delta=_document_count(shadow) - _document_count(main),
            shadow_config={"k": self._shadow_config.top_k, "chunks": len(shadow.results)},
            main_config={"k": main_top_k, "chunks": len(main.results)},
        )
        PipelineMetrics.observe_shadow(overlap)
        self._logger.info("shadow.compare", **metrics.to_log_fields())
        return metrics

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)
