"""Tests for the FastAPI application helpers."""

from __future__ import annotations

import json
from typing import Iterator

import chromadb
from fastapi.testclient import TestClient

from patmosrag.api.app import AppDependencies, create_app
from patmosrag.cache import InMemoryResponseCache
from patmosrag.config import Settings
from patmosrag.embeddings import ChromaVectorStore, EmbeddingConfig, HashEmbeddingBackend
from patmosrag.errors import GenerationError, NormalizationError, SearchBackendError
from patmosrag.models import Answer, CacheEntry, Citation
from patmosrag.retrieval import LexicalKeywordIndex
from patmosrag.services.query import StreamEvent

ANSWER = Answer(
    text="Patmos is an island.",
    citations=(Citation(chunk_id="c1", document_id="notes", title="Notes", author="J. Smith", score=0.9),),
    query_id="query-1",
    latency_ms=12.5,
)


class StubQueryService:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[dict] = []

    def answer(self, question: str, **kwargs) -> Answer:
        self.calls.append({"question": question, **kwargs})
        if self.error:
            raise self.error
        return ANSWER

    def stream(self, question: str, **kwargs) -> Iterator[StreamEvent]:
        self.calls.append({"question": question, **kwargs})
        yield StreamEvent(kind="token", text="Patmos ")
        if self.error:
            raise self.error
        yield StreamEvent(kind="token", text="is an island.")
        yield StreamEvent(kind="complete", answer=ANSWER)


def create_test_client(service: StubQueryService, cache=None) -> tuple[TestClient, AppDependencies]:
    store = ChromaVectorStore(
        HashEmbeddingBackend(EmbeddingConfig(dim=32)),
        collection_name="test-api-app",
        client=chromadb.EphemeralClient(),
    )
    store.reset()
    deps = AppDependencies(
        store=store,
        keyword_index=LexicalKeywordIndex(),
        retriever=object(),
        query_service=service,
        cache=cache,
    )
    app = create_app(settings=Settings(environment="test"), dependencies=deps)
    return TestClient(app), deps


def _events(body: str) -> list[tuple[str, dict]]:
    parsed = []
    for block in body.split("\n\n"):
        lines = [line for line in block.splitlines() if not line.startswith(":")]
        if not lines:
            continue
        event = lines[0].removeprefix("event: ")
        parsed.append((event, json.loads(lines[1].removeprefix("data: "))))
    return parsed


def test_chat_returns_answer_with_citations():
    service = StubQueryService()
    client, _ = create_test_client(service)
    response = client.post(
        "/chat",
        json={"question": "Where is Patmos?", "requester_id": "u1", "session_id": "s1", "top_k": 4},
    )
    assert response.status_code == 200, response.text
    payload = response.json()
    assert payload["answer"] == "Patmos is an island."
    assert payload["citations"][0]["author"] == "J. Smith"
    assert payload["cache_hit"] is False
    assert service.calls[0]["requester_id"] == "u1"
    assert service.calls[0]["top_k"] == 4
    assert response.headers["X-Correlation-ID"]


def test_request_validation_rejects_missing_requester():
    client, _ = create_test_client(StubQueryService())
    assert client.post("/chat", json={"question": "Where is Patmos?"}).status_code == 422
    assert client.post("/chat", json={"question": "q", "requester_id": "u1", "top_k": 0}).status_code == 422


def test_error_mapping():
    cases = [
        (NormalizationError("Query is empty after normalization"), 422),
        (SearchBackendError("All search backends failed"), 503),
        (GenerationError("Generation failed: boom"), 502),
    ]
    for error, expected in cases:
        client, _ = create_test_client(StubQueryService(error=error))
        response = client.post(
            "/chat",
            json={"question": "Where is Patmos?", "requester_id": "u1"},
            headers={"X-Request-ID": "req-42"},
        )
        assert response.status_code == expected, response.text
        assert response.json()["correlation_id"] == "req-42"


def test_stream_emits_tokens_then_complete():
    client, _ = create_test_client(StubQueryService())
    response = client.post("/chat/stream", json={"question": "Where is Patmos?", "requester_id": "u1"})
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = _events(response.text)
    assert [name for name, _ in events] == ["token", "token", "complete"]
    assert events[-1][1]["answer"] == "Patmos is an island."


def test_stream_rejects_bad_question_before_opening():
    service = StubQueryService()
    client, _ = create_test_client(service)
    response = client.post("/chat/stream", json={"question": "\u200b\u200b ", "requester_id": "u1"})
    assert response.status_code == 422
    assert service.calls == []


def test_stream_reports_mid_stream_failure_as_event():
    client, _ = create_test_client(StubQueryService(error=GenerationError("model crashed")))
    response = client.post("/chat/stream", json={"question": "Where is Patmos?", "requester_id": "u1"})
    events = _events(response.text)
    assert [name for name, _ in events] == ["token", "error"]
    assert events[-1][1]["status"] == 502


def test_chunk_ingestion_updates_both_indexes():
    client, deps = create_test_client(StubQueryService())
    response = client.post(
        "/chunks",
        json={
            "chunks": [
                {"chunk_id": "cal-0", "document_id": "cal", "title": "Calendar", "text": "Passover in spring",
                 "source_type": "external_api",
                 "source_metadata": {"provider": "calendar", "last_synced_at": "2024-03-14T00:00:00Z"}},
                {"chunk_id": "cal-1", "document_id": "cal", "title": "Calendar", "text": "Pentecost follows"},
            ]
        },
    )
    assert response.status_code == 201, response.text
    payload = response.json()
    assert payload["indexed"] == 2
    assert payload["documents"] == [
        {"document_id": "cal", "title": "Calendar", "source_type": "external_api", "chunk_count": 2}
    ]
    assert deps.keyword_index.count() == 2
    stats = client.get("/index/stats").json()
    assert stats["total_chunks"] == 2 and stats["keyword_chunks"] == 2

    assert client.delete("/index", params={"document_id": "cal"}).status_code == 204
    assert client.get("/index/stats").json()["total_chunks"] == 0


def test_chunk_ingestion_rejects_bad_metadata():
    client, _ = create_test_client(StubQueryService())
    response = client.post(
        "/chunks",
        json={"chunks": [{"chunk_id": "x", "document_id": "d", "text": "t", "source_type": "external_api",
                          "source_metadata": {"facts": [1, 2]}}]},
    )
    assert response.status_code == 422


def test_cache_stats_and_clear():
    cache = InMemoryResponseCache()
    cache.put("u1:abc:", CacheEntry(answer="cached"))
    cache.get("u1:abc:")
    cache.get("u1:missing:")
    client, _ = create_test_client(StubQueryService(), cache=cache)

    stats = client.get("/cache/stats").json()
    assert stats["enabled"] is True
    assert (stats["hits"], stats["misses"], stats["entries"]) == (1, 1, 1)
    assert stats["hit_rate"] == 50.0

    assert client.delete("/cache").status_code == 204
    assert client.get("/cache/stats").json()["entries"] == 0


def test_cache_stats_when_disabled():
    client, _ = create_test_client(StubQueryService())
    assert client.get("/cache/stats").json()["enabled"] is False


def test_metrics_endpoint_exposes_prometheus_text():
    client, _ = create_test_client(StubQueryService())
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "text/plain" in response.headers["content-type"]
