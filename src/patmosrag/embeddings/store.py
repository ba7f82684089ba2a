"""Vector store implementations."""

from __future__ import annotations

import json
from dataclasses import asdict
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, Mapping, MutableMapping, Protocol, Sequence

import chromadb
from chromadb.api import ClientAPI
from chromadb.api.types import Documents, Embeddings as ChromaEmbeddings, IDs, Metadatas

from patmosrag.embeddings.service import EmbeddingBackend
from patmosrag.models import DocumentChunk, DocumentMetadata, SearchCandidate, parse_source_metadata


class VectorStore(Protocol):
    """Semantic search over pre-embedded chunks."""

    def search(self, vector: Sequence[float], top_k: int) -> Sequence[SearchCandidate]:
        """Return up to ``top_k`` candidates ordered by similarity."""


class ChunkRepository(Protocol):
    """Lookup of chunk content by identifier."""

    def get_chunks(self, chunk_ids: Sequence[str]) -> Mapping[str, DocumentChunk]:
        """Return the chunks that still exist for the given identifiers."""


class FallbackChunkRepository:
    """Reads chunks from a local repository and fetches misses from a shared one.

    Chunks indexed by another instance only live in the shared store; they are
    handed to ``on_fallback`` so the local side can pick them up.
    """

    def __init__(
        self,
        primary: ChunkRepository,
        fallback: ChunkRepository,
        *,
        on_fallback: Callable[[Sequence[DocumentChunk]], object] | None = None,
    ) -> None:
        self._primary = primary
        self._fallback = fallback
        self._on_fallback = on_fallback

    def get_chunks(self, chunk_ids: Sequence[str]) -> Mapping[str, DocumentChunk]:
        found = dict(self._primary.get_chunks(chunk_ids))
        missing = [chunk_id for chunk_id in chunk_ids if chunk_id not in found]
        if not missing:
            return found
        fetched = self._fallback.get_chunks(missing)
        if fetched and self._on_fallback is not None:
            self._on_fallback(list(fetched.values()))
        found.update(fetched)
        return found


class ChromaVectorStore:
    """Chroma-backed vector store using cosine distance."""

    def __init__(
        self,
        embedding_backend: EmbeddingBackend,
        collection_name: str = "patmosrag-chunks",
        *,
        client: ClientAPI | None = None,
        persist_directory: str | Path | None = None,
    ) -> None:
        if client is not None:
            self._client = client
        elif persist_directory is not None:
            self._client = chromadb.PersistentClient(path=str(persist_directory))
        else:
            self._client = chromadb.EphemeralClient()
        self._collection_name = collection_name
        self._collection = self._client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"},
        )
        self._backend = embedding_backend

    def upsert(self, chunks: Sequence[DocumentChunk]) -> Sequence[str]:
        if not chunks:
            return []
        embeddings = self._backend.embed_chunks(chunks)
        ids: IDs = [embedding.chunk.chunk_id for embedding in embeddings]
        documents: Documents = [embedding.chunk.text for embedding in embeddings]
        metadatas: Metadatas = [self._serialize_chunk(embedding.chunk) for embedding in embeddings]
        vectors: ChromaEmbeddings = [list(embedding.vector) for embedding in embeddings]
        self._collection.upsert(ids=ids, documents=documents, embeddings=vectors, metadatas=metadatas)
        return list(ids)

    def search(self, vector: Sequence[float], top_k: int) -> Sequence[SearchCandidate]:
        if top_k <= 0 or self.count() == 0:
            return []
        results = self._collection.query(
            query_embeddings=[list(vector)],
            n_results=min(top_k, self.count()),
            include=["distances"],
        )
        ids = self._first(results.get("ids", []))
        distances = self._first(results.get("distances", []))
        candidates: list[SearchCandidate] = []
        for chunk_id, distance in zip(ids, distances or [], strict=False):
            candidates.append(SearchCandidate(chunk_id=str(chunk_id), score=1.0 - float(distance), origin="semantic"))
        return candidates

    def get_chunks(self, chunk_ids: Sequence[str]) -> Mapping[str, DocumentChunk]:
        if not chunk_ids:
            return {}
        batch = self._collection.get(ids=list(chunk_ids), include=["documents", "metadatas"])
        found: dict[str, DocumentChunk] = {}
        for chunk_id, document, metadata in zip(
            batch.get("ids") or [],
            batch.get("documents") or [],
            batch.get("metadatas") or [],
            strict=False,
        ):
            found[chunk_id] = self._deserialize_chunk(chunk_id, document, metadata or {})
        return found

    def all_chunks(self, batch_size: int = 500) -> Iterator[DocumentChunk]:
        """Yield every stored chunk, paging through the collection."""

        offset = 0
        while True:
            batch = self._collection.get(include=["documents", "metadatas"], limit=batch_size, offset=offset)
            ids = batch.get("ids") or []
            if not ids:
                return
            for chunk_id, document, metadata in zip(
                ids,
                batch.get("documents") or [],
                batch.get("metadatas") or [],
                strict=False,
            ):
                yield self._deserialize_chunk(chunk_id, document, metadata or {})
            offset += len(ids)

    def delete_document(self, document_id: str) -> None:
        self._collection.delete(where={"document_id": document_id})

    def reset(self) -> None:
        self._client.delete_collection(self._collection_name)
        self._collection = self._client.get_or_create_collection(
            name=self._collection_name,
            metadata={"hnsw:space": "cosine"},
        )

    def count(self) -> int:
        return int(self._collection.count())

    def _serialize_chunk(self, chunk: DocumentChunk) -> MutableMapping[str, object]:
        metadata: MutableMapping[str, object] = {
            "document_id": chunk.document.document_id,
            "title": chunk.document.title,
            "author": chunk.document.author or "",
            "source_type": chunk.source_type,
            "order": chunk.order,
            "token_count": chunk.token_count,
            "source_metadata": self._dumps(asdict(chunk.source_metadata) if chunk.source_metadata else {}),
        }
        return metadata

    def _deserialize_chunk(self, chunk_id: str, document: str, metadata: Mapping[str, object]) -> DocumentChunk:
        source_type = str(metadata.get("source_type", "upload"))
        raw_source = self._loads_dict(metadata.get("source_metadata"))
        return DocumentChunk(
            chunk_id=chunk_id,
            text=document or "",
            document=DocumentMetadata(
                document_id=str(metadata.get("document_id", "")),
                title=str(metadata.get("title", "")),
                author=str(metadata["author"]) if metadata.get("author") else None,
            ),
            source_type=source_type,
            source_metadata=parse_source_metadata(source_type, raw_source) if raw_source else None,
            order=int(metadata.get("order", 0)),
            token_count=int(metadata.get("token_count", 0)),
        )

    @staticmethod
    def _first(value: object) -> Iterable:
        if isinstance(value, list):
            return value[0] if value else []
        return []

    @staticmethod
    def _dumps(value: object) -> str:
        try:
            return json.dumps(value, default=str)
        except TypeError:
            return json.dumps({}, default=str)

    @staticmethod
    def _loads_dict(value: object) -> Dict[str, object]:
        if isinstance(value, str) and value:
            try:
                loaded = json.loads(value)
                if isinstance(loaded, dict):
                    return loaded
            except json.JSONDecodeError:
                return {}
        if isinstance(value, Mapping):
            return dict(value)
        return {}
