"""Response cache backends."""

from __future__ import annotations

import json
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Protocol

import redis

from patmosrag.errors import CacheBackendError
from patmosrag.metrics.observability import PipelineMetrics, get_logger
from patmosrag.models import CacheEntry


@dataclass(frozen=True)
class CacheStats:
    hits: int = 0
    misses: int = 0
    entries: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return (self.hits / total) * 100 if total else 0.0


class ResponseCache(Protocol):
    """Protocol for response cache stores."""

    def get(self, key: str) -> CacheEntry | None:
        """Return the stored entry for ``key`` or ``None`` on a miss."""

    def put(self, key: str, entry: CacheEntry) -> None:
        """Store ``entry`` under ``key``, replacing any previous value."""


class InMemoryResponseCache:
    """Process-local LRU cache with per-entry TTL.

    Hit rate of this store depends on which instance serves a request; use
    :class:`RedisResponseCache` when more than one instance is running.
    """

    def __init__(
        self,
        *,
        max_entries: int = 1000,
        ttl_seconds: float | None = 30 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._max_entries = max_entries
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, CacheEntry]] = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, key: str) -> CacheEntry | None:
        with self._lock:
            item = self._entries.get(key)
            if item is None:
                self._misses += 1
                return None
            stored_at, entry = item
            if self._ttl is not None and self._clock() - stored_at > self._ttl:
                del self._entries[key]
                self._misses += 1
                return None
            self._entries.move_to_end(key)
            self._hits += 1
            return entry

    def put(self, key: str, entry: CacheEntry) -> None:
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
            self._entries[key] = (self._clock(), entry)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)
                self._evictions += 1

    def purge_expired(self) -> int:
        if self._ttl is None:
            return 0
        now = self._clock()
        with self._lock:
            expired = [key for key, (stored_at, _) in self._entries.items() if now - stored_at > self._ttl]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
            self._evictions = 0

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                entries=len(self._entries),
                evictions=self._evictions,
            )

    def __len__(self) -> int:
        return len(self._entries)


class RedisResponseCache:
    """Shared response cache backed by Redis."""

    def __init__(
        self,
        client: redis.Redis,
        *,
        namespace: str = "patmosrag:chat",
        ttl_seconds: int | None = 30 * 60,
    ) -> None:
        self._client = client
        self._namespace = namespace
        self._ttl = ttl_seconds
        self._hits = 0
        self._misses = 0
        self._lock = threading.Lock()

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisResponseCache":
        client = redis.Redis.from_url(url, encoding="utf-8", decode_responses=True)
        return cls(client, **kwargs)

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    def get(self, key: str) -> CacheEntry | None:
        try:
            raw = self._client.get(self._key(key))
        except redis.RedisError as exc:
            raise CacheBackendError(f"Redis get failed: {exc}") from exc
        with self._lock:
            if raw is None:
                self._misses += 1
                return None
            self._hits += 1
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            return CacheEntry.from_dict(json.loads(raw))
        except (KeyError, TypeError, ValueError) as exc:
            raise CacheBackendError(f"Corrupt cache entry under {key}: {exc}") from exc

    def put(self, key: str, entry: CacheEntry) -> None:
        payload = json.dumps(entry.to_dict())
        try:
            self._client.set(self._key(key), payload, ex=self._ttl)
        except redis.RedisError as exc:
            raise CacheBackendError(f"Redis set failed: {exc}") from exc

    def clear(self) -> None:
        try:
            keys = list(self._client.scan_iter(match=f"{self._namespace}:*"))
            if keys:
                self._client.delete(*keys)
        except redis.RedisError as exc:
            raise CacheBackendError(f"Redis clear failed: {exc}") from exc
        with self._lock:
            self._hits = 0
            self._misses = 0

    def stats(self) -> CacheStats:
        try:
            entries = sum(1 for _ in self._client.scan_iter(match=f"{self._namespace}:*"))
        except redis.RedisError as exc:
            raise CacheBackendError(f"Redis scan failed: {exc}") from exc
        with self._lock:
            return CacheStats(hits=self._hits, misses=self._misses, entries=entries)


class SingleFlight:
    """Per-key in-flight markers so concurrent misses can share one generation.

    The first caller for a key becomes the leader and must call :meth:`release`
    when done; later callers get the leader's event and may wait on it before
    re-checking the cache.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: dict[str, threading.Event] = {}

    def acquire(self, key: str) -> tuple[bool, threading.Event]:
        with self._lock:
            event = self._events.get(key)
            if event is not None:
                return False, event
            event = threading.Event()
            self._events[key] = event
            return True, event

    def release(self, key: str) -> None:
        with self._lock:
            event = self._events.pop(key, None)
        if event is not None:
            event.set()

    def in_flight(self) -> int:
        with self._lock:
            return len(self._events)


class FailOpenCache:
    """Wraps a cache so backend outages behave as misses."""

    def __init__(self, inner: ResponseCache) -> None:
        self._inner = inner
        self._logger = get_logger("cache")

    def get(self, key: str) -> CacheEntry | None:
        try:
            entry = self._inner.get(key)
        except CacheBackendError as exc:
            self._logger.warning("cache.unavailable", operation="get", detail=str(exc))
            PipelineMetrics.observe_cache_error("get")
            return None
        PipelineMetrics.observe_cache_lookup(hit=entry is not None)
        return entry

    def put(self, key: str, entry: CacheEntry) -> bool:
        try:
            self._inner.put(key, entry)
        except CacheBackendError as exc:
            self._logger.warning("cache.unavailable", operation="put", detail=str(exc))
            PipelineMetrics.observe_cache_error("put")
            return False
        return True
