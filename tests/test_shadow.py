from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from patmosrag.models import DocumentChunk, DocumentMetadata, MergedResult
from patmosrag.retrieval.merge import HybridWeights
from patmosrag.retrieval.service import HybridSearchOutcome, RetrievalConfig
from patmosrag.services.shadow import ShadowRunner


def _outcome(*pairs: tuple[str, str]) -> HybridSearchOutcome:
    results = [
        MergedResult(
            chunk_id=chunk_id,
            combined_score=1.0,
            chunk=DocumentChunk(chunk_id=chunk_id, text=chunk_id, document=DocumentMetadata(document_id=doc_id)),
        )
        for chunk_id, doc_id in pairs
    ]
    return HybridSearchOutcome(results=results, weights=HybridWeights())


class StubRetriever:
    def __init__(self, outcome: HybridSearchOutcome | None = None, error: Exception | None = None) -> None:
        self.outcome = outcome
        self.error = error
        self.configs: list[RetrievalConfig | None] = []

    def search(self, question, *, top_k=None, timings=None, config=None, requester_id=None):
        self.configs.append(config)
        if self.error:
            raise self.error
        return self.outcome


MAIN = _outcome(("c1", "d1"), ("c2", "d1"), ("c3", "d2"), ("c4", "d3"))


def test_sampled_run_compares_against_main_results():
    shadow_config = RetrievalConfig(top_k=17)
    retriever = StubRetriever(_outcome(("c1", "d1"), ("c3", "d2"), ("c9", "d9"), ("c8", "d8")))
    with ThreadPoolExecutor(max_workers=1) as executor:
        runner = ShadowRunner(retriever, shadow_config, sample_rate=1.0, executor=executor)
        future = runner.maybe_run("Where is Patmos?", MAIN, main_top_k=8, requester_id="u1", session_id="s1")
        metrics = future.result(timeout=5)

    assert retriever.configs == [shadow_config]
    assert metrics.overlap == 50
    assert metrics.citation_delta == 1
    assert metrics.shadow_config == {"k": 17, "chunks": 4}
    assert metrics.main_config == {"k": 8, "chunks": 4}
    assert metrics.to_log_fields()["requester_id"] == "u1"


def test_unsampled_requests_never_run():
    retriever = StubRetriever(MAIN)
    runner = ShadowRunner(retriever, RetrievalConfig(), sample_rate=0.0)
    assert all(runner.maybe_run("q", MAIN, main_top_k=8) is None for _ in range(100))
    assert retriever.configs == []
    runner.close()


def test_shadow_failures_are_swallowed():
    retriever = StubRetriever(error=RuntimeError("vector db down"))
    with ThreadPoolExecutor(max_workers=1) as executor:
        runner = ShadowRunner(retriever, RetrievalConfig(), sample_rate=1.0, executor=executor)
        future = runner.maybe_run("q", MAIN, main_top_k=8)
        assert future.result(timeout=5) is None
