"""Pydantic models for the PatmosRAG API."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from patmosrag.config import get_settings


class ChatRequest(BaseModel):
    question: str = Field(..., min_length=1, description="End-user question to answer")
    requester_id: str = Field(..., min_length=1, description="Identity of the user asking")
    session_id: Optional[str] = Field(default=None, description="Conversation the question belongs to")
    top_k: Optional[int] = Field(
        default=None,
        ge=1,
        le=get_settings().search_max_top_k,
        description="Override the number of retrieved chunks",
    )
    source_types: Optional[List[str]] = Field(
        default=None,
        description="Pin the cache key to these source types instead of the session's last retrieval",
    )


class CitationModel(BaseModel):
    chunk_id: str
    document_id: str
    title: str
    author: Optional[str] = None
    source_type: str
    score: float


class ChatResponse(BaseModel):
    query_id: str
    answer: str
    citations: List[CitationModel]
    cache_hit: bool
    degraded: bool = False
    failed_sources: List[str] = Field(default_factory=list)
    latency_ms: float
    ftl_ms: Optional[float] = None
    ttlt_ms: Optional[float] = None


class ChunkModel(BaseModel):
    """A pre-chunked record produced by the ingestion pipeline."""

    chunk_id: str = Field(..., min_length=1)
    document_id: str = Field(..., min_length=1)
    title: str = ""
    author: Optional[str] = None
    text: str = Field(..., min_length=1)
    source_type: str = "upload"
    source_metadata: Dict[str, Any] = Field(default_factory=dict)
    order: int = Field(default=0, ge=0)
    token_count: int = Field(default=0, ge=0)


class ChunkIngestionRequest(BaseModel):
    chunks: List[ChunkModel] = Field(..., min_length=1, description="Chunks to index")


class DocumentSummary(BaseModel):
    document_id: str = Field(..., description="Identifier of the document the chunks belong to")
    title: str
    source_type: str
    chunk_count: int = Field(..., ge=0, description="Number of chunks indexed for the document")


class ChunkIngestionResponse(BaseModel):
    indexed: int
    documents: List[DocumentSummary]


class IndexStatsResponse(BaseModel):
    collection: str
    total_chunks: int
    keyword_chunks: int


class CacheStatsResponse(BaseModel):
    backend: str
    enabled: bool
    hits: int = 0
    misses: int = 0
    hit_rate: float = 0.0
    entries: int = 0
    evictions: int = 0
