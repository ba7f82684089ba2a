"""Exception hierarchy shared by the retrieval, cache and generation layers."""

from __future__ import annotations

from typing import Mapping


class PatmosRAGError(RuntimeError):
    """Base class for errors raised by PatmosRAG."""


class NormalizationError(PatmosRAGError, ValueError):
    """Raised when a query cannot be turned into a cache key."""


class SearchBackendError(PatmosRAGError):
    """Raised when every search backend failed for a query."""

    def __init__(self, message: str, causes: Mapping[str, BaseException] | None = None) -> None:
        super().__init__(message)
        self.causes: dict[str, BaseException] = dict(causes or {})

    def __str__(self) -> str:
        base = super().__str__()
        if not self.causes:
            return base
        detail = "; ".join(f"{name}: {exc}" for name, exc in sorted(self.causes.items()))
        return f"{base} ({detail})"


class CacheBackendError(PatmosRAGError):
    """Raised when the response cache store cannot be reached."""


class GenerationError(PatmosRAGError):
    """Raised when the LLM stream fails before completing."""


class GenerationAborted(GenerationError):
    """Raised when the caller cancelled the stream mid-generation."""


__all__ = [
    "CacheBackendError",
    "GenerationAborted",
    "GenerationError",
    "NormalizationError",
    "PatmosRAGError",
    "SearchBackendError",
]
