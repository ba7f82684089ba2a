"""Shared domain models used across the PatmosRAG pipeline."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Literal, Mapping, Sequence, Union

if TYPE_CHECKING:
    from patmosrag.metrics.performance import PerformanceMetrics

Origin = Literal["semantic", "keyword", "hybrid"]


@dataclass(frozen=True)
class UploadSourceMetadata:
    """Facts about a user-uploaded document."""

    source_type: Literal["upload"] = "upload"
    storage_path: str | None = None
    file_size: int | None = None
    download_enabled: bool = False


@dataclass(frozen=True)
class WebSourceMetadata:
    """Facts about a scraped web page."""

    source_type: Literal["web_scraped"] = "web_scraped"
    url: str | None = None
    scraped_at: datetime | None = None


@dataclass(frozen=True)
class ExternalApiSourceMetadata:
    """Facts about a dataset synced from an external API."""

    source_type: Literal["external_api"] = "external_api"
    provider: str | None = None
    dataset: str | None = None
    last_synced_at: datetime | None = None
    facts: Mapping[str, Any] = field(default_factory=dict)


SourceMetadata = Union[UploadSourceMetadata, WebSourceMetadata, ExternalApiSourceMetadata]


def _parse_datetime(value: object) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    raise ValueError(f"Expected ISO timestamp, got {value!r}")


def parse_source_metadata(source_type: str, payload: Mapping[str, Any] | None) -> SourceMetadata | None:
    """Validate a raw metadata mapping into the variant matching ``source_type``.

    Unknown source types carry no structured metadata and return ``None``.
    """

    data = dict(payload or {})
    if source_type == "upload":
        size = data.get("file_size")
        return UploadSourceMetadata(
            storage_path=data.get("storage_path"),
            file_size=int(size) if size is not None else None,
            download_enabled=bool(data.get("download_enabled", False)),
        )
    if source_type == "web_scraped":
        return WebSourceMetadata(url=data.get("url"), scraped_at=_parse_datetime(data.get("scraped_at")))
    if source_type == "external_api":
        facts = data.get("facts") or {}
        if not isinstance(facts, Mapping):
            raise ValueError("external_api facts must be a mapping")
        return ExternalApiSourceMetadata(
            provider=data.get("provider"),
            dataset=data.get("dataset"),
            last_synced_at=_parse_datetime(data.get("last_synced_at")),
            facts=dict(facts),
        )
    return None


def source_freshness(metadata: SourceMetadata | None) -> datetime | None:
    """Return the timestamp that bounds how stale answers from this source may be."""

    if isinstance(metadata, ExternalApiSourceMetadata):
        return metadata.last_synced_at
    return None


@dataclass(frozen=True)
class DocumentMetadata:
    """Attribution for the document that owns a chunk."""

    document_id: str
    title: str = ""
    author: str | None = None


@dataclass(frozen=True)
class DocumentChunk:
    """Unit of retrievable text produced by the ingestion pipeline."""

    chunk_id: str
    text: str
    document: DocumentMetadata
    source_type: str = "upload"
    source_metadata: SourceMetadata | None = None
    order: int = 0
    token_count: int = 0


@dataclass(frozen=True)
class SearchCandidate:
    """Chunk reference scored by one search backend."""

    chunk_id: str
    score: float
    origin: Origin


@dataclass(frozen=True)
class MergedResult:
    """Candidate after hybrid weighting and deduplication."""

    chunk_id: str
    combined_score: float
    semantic_score: float = 0.0
    keyword_score: float = 0.0
    origin: Origin = "semantic"
    chunk: DocumentChunk | None = None


@dataclass(frozen=True)
class Citation:
    """Source attribution returned alongside an answer."""

    chunk_id: str
    document_id: str
    title: str
    author: str | None = None
    source_type: str = "upload"
    score: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "document_id": self.document_id,
            "title": self.title,
            "author": self.author,
            "source_type": self.source_type,
            "score": self.score,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Citation":
        return cls(
            chunk_id=str(payload["chunk_id"]),
            document_id=str(payload["document_id"]),
            title=str(payload.get("title", "")),
            author=payload.get("author"),
            source_type=str(payload.get("source_type", "upload")),
            score=float(payload.get("score", 0.0)),
        )


@dataclass(frozen=True)
class CacheEntry:
    """Previously generated answer stored in the response cache."""

    answer: str
    citations: Sequence[Citation] = ()
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "answer": self.answer,
            "citations": [citation.to_dict() for citation in self.citations],
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "CacheEntry":
        return cls(
            answer=str(payload["answer"]),
            citations=tuple(Citation.from_dict(item) for item in payload.get("citations", [])),
            created_at=float(payload.get("created_at", 0.0)),
        )


@dataclass(frozen=True)
class Answer:
    """Final answer handed to the response renderer."""

    text: str
    citations: Sequence[Citation]
    query_id: str
    latency_ms: float
    cache_hit: bool = False
    degraded: bool = False
    failed_sources: Sequence[str] = ()
    metrics: "PerformanceMetrics | None" = None
