"""Runtime configuration for the PatmosRAG services."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="patmosrag_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    chroma_persist_dir: Path = Path("./.chroma")
    chroma_collection: str = "patmosrag-chunks"
    chroma_host: str | None = None
    chroma_port: int | None = None
    chroma_ssl: bool = False

    embedding_model: str = "BAAI/bge-small-en-v1.5"
    embedding_dim: int = 384
    use_model_embeddings: bool = False

    generator_model: str = "Qwen/Qwen2.5-1.8B-Instruct"
    generator_max_new_tokens: int = 512
    generator_temperature: float = 0.3
    use_model_generator: bool = False

    # Hybrid search (weights were tuned empirically; keep them configurable)
    hybrid_semantic_weight: float = 0.7
    hybrid_keyword_weight: float = 0.3
    hybrid_adaptive_weights: bool = False
    search_max_results: int = 20
    search_max_top_k: int = 50
    min_semantic_score: float = 0.3
    min_keyword_score: float = 0.05
    max_chunks_per_document: int = 3
    search_timeout_seconds: float = 10.0

    # Context assembly
    context_chunk_limit: int = 8
    context_chunks_per_document: int = 4
    max_citations: int = 8

    # Response cache
    cache_enabled: bool = True
    cache_backend: Literal["memory", "redis"] = "memory"
    cache_ttl_seconds: int = 30 * 60
    cache_max_entries: int = 1000
    cache_namespace: str = "patmosrag:chat"
    cache_version: str = "pv2.1|qwen2.5|bge-small|idx1|sv1.2"
    cache_freshness_unit: Literal["month", "day"] = "month"
    cache_single_flight: bool = False
    cache_single_flight_timeout_seconds: float = 30.0
    redis_url: str = "redis://localhost:6379/0"

    # Shadow runs
    shadow_sample_rate: float = 0.02
    shadow_top_k: int = 17
    shadow_max_chunks_per_document: int = 3
    shadow_workers: int = 2

    # CORS
    cors_allow_origins: tuple[str, ...] = ()
    cors_allow_credentials: bool = False
    cors_allow_methods: tuple[str, ...] = ("GET", "POST", "DELETE", "OPTIONS")
    cors_allow_headers: tuple[str, ...] = ("*",)

    evaluation_min_recall: float = 0.5
    evaluation_min_mrr: float = 0.5

    @property
    def feature_flags(self) -> dict[str, bool]:
        return {
            "adaptive_weights": self.hybrid_adaptive_weights,
            "cache": self.cache_enabled,
            "single_flight": self.cache_single_flight,
            "model_generator": self.use_model_generator,
        }


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
