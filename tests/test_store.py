from __future__ import annotations

from datetime import datetime, timezone

import chromadb

from patmosrag.embeddings.service import EmbeddingConfig, HashEmbeddingBackend
from patmosrag.embeddings.store import ChromaVectorStore
from patmosrag.models import DocumentChunk, DocumentMetadata, ExternalApiSourceMetadata, WebSourceMetadata


def _mk(doc_id: str, text: str, order: int, **kwargs) -> DocumentChunk:
    meta = DocumentMetadata(document_id=doc_id, title=f"{doc_id} title", author=kwargs.pop("author", None))
    return DocumentChunk(chunk_id=f"{doc_id}-{order}", text=text, document=meta, order=order, **kwargs)


def _store(name: str) -> ChromaVectorStore:
    store = ChromaVectorStore(
        HashEmbeddingBackend(EmbeddingConfig(dim=64)),
        collection_name=name,
        client=chromadb.EphemeralClient(),
    )
    store.reset()
    return store


def test_store_upsert_and_similarity_search():
    backend = HashEmbeddingBackend(EmbeddingConfig(dim=64))
    store = _store("test-store")
    chunks = [_mk("d1", "alpha beta gamma", 0), _mk("d2", "lorem ipsum dolor", 0)]
    ids = store.upsert(chunks)
    assert ids == ["d1-0", "d2-0"]
    assert store.count() == 2

    results = store.search(backend.embed_query("alpha beta gamma"), top_k=2)
    assert results[0].chunk_id == "d1-0"
    assert results[0].origin == "semantic"
    assert results[0].score > results[-1].score


def test_search_on_empty_collection_returns_nothing():
    store = _store("test-empty")
    assert store.search((1.0,) * 64, top_k=5) == []


def test_chunks_round_trip_with_typed_source_metadata():
    store = _store("test-roundtrip")
    synced = datetime(2024, 3, 14, 10, 0, tzinfo=timezone.utc)
    chunks = [
        _mk(
            "feasts",
            "Passover begins on the fourteenth of Nisan.",
            0,
            author="Calendar Team",
            source_type="external_api",
            source_metadata=ExternalApiSourceMetadata(provider="calendar", last_synced_at=synced, facts={"year": 2024}),
        ),
        _mk(
            "parables",
            "The sower scatters seed.",
            3,
            source_type="web_scraped",
            source_metadata=WebSourceMetadata(url="https://example.org/parables"),
        ),
    ]
    store.upsert(chunks)
    found = store.get_chunks(["feasts-0", "parables-3", "missing"])
    assert set(found) == {"feasts-0", "parables-3"}
    feast = found["feasts-0"]
    assert feast.document.author == "Calendar Team"
    assert isinstance(feast.source_metadata, ExternalApiSourceMetadata)
    assert feast.source_metadata.last_synced_at == synced
    assert feast.source_metadata.facts == {"year": 2024}
    parable = found["parables-3"]
    assert parable.document.author is None
    assert parable.order == 3
    assert isinstance(parable.source_metadata, WebSourceMetadata)
    assert sorted(chunk.chunk_id for chunk in store.all_chunks(batch_size=1)) == ["feasts-0", "parables-3"]


def test_delete_document_and_reset():
    store = _store("test-delete")
    store.upsert([_mk("a", "alpha", 0), _mk("a", "bravo", 1), _mk("b", "charlie", 0)])
    store.delete_document("a")
    assert store.count() == 1
    assert set(store.get_chunks(["a-0", "a-1", "b-0"])) == {"b-0"}
    store.reset()
    assert store.count() == 0
