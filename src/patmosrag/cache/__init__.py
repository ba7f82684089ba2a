"""Response caching and cache-key normalization."""

from .keys import QueryNormalizer, build_cache_key, floor_timestamp, normalize_query, question_hash
from .store import (
    CacheStats,
    FailOpenCache,
    InMemoryResponseCache,
    RedisResponseCache,
    ResponseCache,
    SingleFlight,
)

__all__ = [
    "CacheStats",
    "FailOpenCache",
    "InMemoryResponseCache",
    "QueryNormalizer",
    "RedisResponseCache",
    "ResponseCache",
    "SingleFlight",
    "build_cache_key",
    "floor_timestamp",
    "normalize_query",
    "question_hash",
]
