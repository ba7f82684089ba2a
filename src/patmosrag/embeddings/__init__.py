"""Embedding services and the vector store."""

from .service import Embedding, EmbeddingBackend, EmbeddingConfig, HashEmbeddingBackend, ModelEmbeddingBackend
from .store import ChromaVectorStore, ChunkRepository, FallbackChunkRepository, VectorStore

__all__ = [
    "ChromaVectorStore",
    "ChunkRepository",
    "Embedding",
    "EmbeddingBackend",
    "EmbeddingConfig",
    "FallbackChunkRepository",
    "HashEmbeddingBackend",
    "ModelEmbeddingBackend",
    "VectorStore",
]
