from __future__ import annotations

import threading
from typing import Mapping, Sequence

import chromadb
import pytest

from patmosrag.embeddings import (
    ChromaVectorStore,
    EmbeddingConfig,
    FallbackChunkRepository,
    HashEmbeddingBackend,
)
from patmosrag.errors import SearchBackendError
from patmosrag.metrics.performance import create_timings
from patmosrag.models import DocumentChunk, DocumentMetadata, SearchCandidate
from patmosrag.retrieval.keyword import LexicalKeywordIndex
from patmosrag.retrieval.merge import HybridWeights
from patmosrag.retrieval.service import HybridRetriever, RetrievalConfig


def _chunk(chunk_id: str, doc_id: str, source_type: str = "upload") -> DocumentChunk:
    return DocumentChunk(
        chunk_id=chunk_id,
        text=f"text of {chunk_id}",
        document=DocumentMetadata(document_id=doc_id, title=doc_id.title()),
        source_type=source_type,
    )


CHUNKS = {
    "c1": _chunk("c1", "d1"),
    "c2": _chunk("c2", "d2", "web_scraped"),
    "c3": _chunk("c3", "d3", "external_api"),
}


class StubEmbedder:
    def embed_query(self, query: str):
        return (1.0, 0.0)

    def embed_chunks(self, chunks):
        return []


class StubVectorStore:
    def __init__(self, candidates: Sequence[SearchCandidate] = (), error: Exception | None = None, barrier=None):
        self.candidates = list(candidates)
        self.error = error
        self.barrier = barrier
        self.calls: list[int] = []

    def search(self, vector, top_k: int):
        self.calls.append(top_k)
        if self.barrier is not None:
            self.barrier.wait(timeout=5)
        if self.error:
            raise self.error
        return self.candidates[:top_k]


class StubKeywordIndex:
    def __init__(self, candidates: Sequence[SearchCandidate] = (), error: Exception | None = None, barrier=None):
        self.candidates = list(candidates)
        self.error = error
        self.barrier = barrier

    def search(self, query_text: str, top_k: int):
        if self.barrier is not None:
            self.barrier.wait(timeout=5)
        if self.error:
            raise self.error
        return self.candidates[:top_k]


class StubRepository:
    def __init__(self, chunks: Mapping[str, DocumentChunk]) -> None:
        self.chunks = dict(chunks)

    def get_chunks(self, chunk_ids):
        return {chunk_id: self.chunks[chunk_id] for chunk_id in chunk_ids if chunk_id in self.chunks}


SEMANTIC = [
    SearchCandidate(chunk_id="c1", score=0.9, origin="semantic"),
    SearchCandidate(chunk_id="c2", score=0.5, origin="semantic"),
]
KEYWORD = [
    SearchCandidate(chunk_id="c2", score=1.0, origin="keyword"),
    SearchCandidate(chunk_id="c3", score=0.8, origin="keyword"),
]

CONFIG = RetrievalConfig(min_semantic_score=0.0, min_keyword_score=0.0, timeout_seconds=5.0)


def _retriever(vector_store, keyword_index, config: RetrievalConfig = CONFIG) -> HybridRetriever:
    return HybridRetriever(
        StubEmbedder(),
        vector_store,
        keyword_index,
        repository=StubRepository(CHUNKS),
        config=config,
    )


def test_hybrid_search_merges_both_backends():
    retriever = _retriever(StubVectorStore(SEMANTIC), StubKeywordIndex(KEYWORD))
    timings = create_timings()
    outcome = retriever.search("where is patmos", timings=timings, requester_id="u1")
    assert sorted(result.chunk_id for result in outcome.results) == ["c1", "c2", "c3"]
    assert outcome.degraded is False
    assert outcome.failed_sources == ()
    assert (outcome.semantic_count, outcome.keyword_count) == (2, 2)
    assert outcome.weights == HybridWeights()
    assert outcome.source_types == ["external_api", "upload", "web_scraped"]
    assert all(result.chunk is not None for result in outcome.results)
    assert timings.search and timings.rerank and timings.metadata
    assert timings.is_monotonic()
    retriever.close()


def test_backends_run_concurrently():
    # Each backend blocks until the other has started; a sequential run would time out.
    barrier = threading.Barrier(2)
    retriever = _retriever(StubVectorStore(SEMANTIC, barrier=barrier), StubKeywordIndex(KEYWORD, barrier=barrier))
    outcome = retriever.search("patmos")
    assert outcome.degraded is False
    retriever.close()


def test_keyword_failure_degrades_to_semantic_only():
    retriever = _retriever(StubVectorStore(SEMANTIC), StubKeywordIndex(error=RuntimeError("fts down")))
    outcome = retriever.search("patmos")
    assert outcome.degraded is True
    assert outcome.failed_sources == ("keyword",)
    assert [result.chunk_id for result in outcome.results] == ["c1", "c2"]
    assert all(result.origin == "semantic" for result in outcome.results)


def test_semantic_failure_degrades_to_keyword_only():
    retriever = _retriever(StubVectorStore(error=ConnectionError("vector db down")), StubKeywordIndex(KEYWORD))
    outcome = retriever.search("patmos")
    assert outcome.degraded is True
    assert outcome.failed_sources == ("semantic",)
    assert [result.chunk_id for result in outcome.results] == ["c2", "c3"]


def test_both_failures_raise_with_causes():
    retriever = _retriever(
        StubVectorStore(error=ConnectionError("vector db down")),
        StubKeywordIndex(error=RuntimeError("fts down")),
    )
    with pytest.raises(SearchBackendError) as excinfo:
        retriever.search("patmos")
    assert set(excinfo.value.causes) == {"semantic", "keyword"}
    assert "vector db down" in str(excinfo.value)


def test_empty_backends_are_not_an_error():
    outcome = _retriever(StubVectorStore(), StubKeywordIndex()).search("patmos")
    assert outcome.results == []
    assert outcome.degraded is False
    assert outcome.confidence == 0.0


def test_top_k_is_clamped_and_thresholds_applied():
    config = RetrievalConfig(top_k=20, max_top_k=2, min_semantic_score=0.6, min_keyword_score=0.0)
    store = StubVectorStore(SEMANTIC)
    retriever = _retriever(store, StubKeywordIndex(KEYWORD), config)
    outcome = retriever.search("patmos", top_k=10)
    assert store.calls == [2]
    assert [result.chunk_id for result in outcome.results] == ["c1", "c2"]
    # c2 falls under the semantic threshold, so only its keyword hit counts
    assert outcome.results[1].origin == "keyword"


def test_adaptive_weights_follow_query_intent():
    config = RetrievalConfig(adaptive_weights=True, min_semantic_score=0.0, min_keyword_score=0.0)
    retriever = _retriever(StubVectorStore(SEMANTIC), StubKeywordIndex(KEYWORD), config)
    outcome = retriever.search("When was Revelation written?")
    assert outcome.weights == HybridWeights(semantic=0.4, keyword=0.6)
    assert outcome.strategy.startswith("factual")


def test_missing_chunks_are_dropped_from_results():
    store = StubVectorStore([SearchCandidate(chunk_id="ghost", score=0.99, origin="semantic"), *SEMANTIC])
    outcome = _retriever(store, StubKeywordIndex()).search("patmos")
    assert "ghost" not in [result.chunk_id for result in outcome.results]


def test_fallback_repository_fills_local_misses():
    local = StubRepository({"c1": CHUNKS["c1"]})
    shared = StubRepository(CHUNKS)
    learned: list[str] = []
    repository = FallbackChunkRepository(
        local, shared, on_fallback=lambda chunks: learned.extend(chunk.chunk_id for chunk in chunks)
    )
    found = repository.get_chunks(["c1", "c3", "ghost"])
    assert set(found) == {"c1", "c3"}
    assert learned == ["c3"]


def test_instance_hydrates_chunks_indexed_by_another_instance():
    client = chromadb.EphemeralClient()
    backend = HashEmbeddingBackend(EmbeddingConfig(dim=64))
    config = RetrievalConfig(min_semantic_score=0.0, min_keyword_score=0.0, timeout_seconds=5.0)

    def _instance() -> tuple[HybridRetriever, LexicalKeywordIndex, ChromaVectorStore]:
        store = ChromaVectorStore(backend, collection_name="test-shared-instances", client=client)
        keyword_index = LexicalKeywordIndex()
        retriever = HybridRetriever(
            backend,
            store,
            keyword_index,
            repository=FallbackChunkRepository(keyword_index, store, on_fallback=keyword_index.upsert),
            config=config,
        )
        return retriever, keyword_index, store

    first, first_index, first_store = _instance()
    first_store.reset()
    second, second_index, _ = _instance()

    chunk = DocumentChunk(
        chunk_id="patmos-0",
        text="John was exiled on the island of Patmos.",
        document=DocumentMetadata(document_id="patmos", title="Patmos"),
    )
    first_store.upsert([chunk])
    first_index.upsert([chunk])

    outcome = second.search("island of Patmos")
    assert [result.chunk_id for result in outcome.results] == ["patmos-0"]
    assert outcome.results[0].chunk.document.title == "Patmos"
    assert second_index.count() == 1
    first.close()
    second.close()
