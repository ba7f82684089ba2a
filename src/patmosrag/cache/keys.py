"""Cache key construction for chat responses.

A key is built from the requester, a content hash of the normalized question and
the sorted set of source types present in the requester's last retrieval::

    {requester}:{question_hash}:{source_a,source_b}[:{source@YYYY-MM-01,...}]

The trailing freshness segment only appears when a source carries a sync
timestamp. Timestamps are floored to a coarse unit so that sub-unit sync drift
keeps hitting the same entry.
"""

from __future__ import annotations

import hashlib
import re
import unicodedata
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, Literal, Mapping

from patmosrag.errors import NormalizationError

FreshnessUnit = Literal["month", "day"]

DEFAULT_CACHE_VERSION = "pv2.1|qwen2.5|bge-small|idx1|sv1.2"

_ZERO_WIDTH = re.compile("[\u200b-\u200d\ufeff]")
_WHITESPACE = re.compile(r"\s+")


def normalize_query(text: object) -> str:
    """Return ``text`` with Unicode, whitespace and case variance removed.

    Punctuation is kept: "C++" and "C" are different questions.
    """

    if text is None:
        raise NormalizationError("Question text is required")
    if not isinstance(text, str):
        raise NormalizationError(f"Question text must be a string, got {type(text).__name__}")
    normalized = unicodedata.normalize("NFKC", text)
    normalized = _ZERO_WIDTH.sub("", normalized)
    normalized = _WHITESPACE.sub(" ", normalized).strip().lower()
    if not normalized:
        raise NormalizationError("Question text is empty after normalization")
    return normalized


def question_hash(text: object, *, version: str = DEFAULT_CACHE_VERSION) -> str:
    normalized = normalize_query(text)
    digest = hashlib.sha256(f"{version}|{normalized}".encode("utf-8")).hexdigest()
    return digest[:16]


def floor_timestamp(value: datetime | date, unit: FreshnessUnit = "month") -> date:
    """Round ``value`` down to the first day of its month (or to its day)."""

    day = value.date() if isinstance(value, datetime) else value
    if unit == "month":
        return day.replace(day=1)
    if unit == "day":
        return day
    raise NormalizationError(f"Unsupported freshness unit: {unit}")


def _canonical_sources(source_types: Iterable[str] | None) -> list[str]:
    if source_types is None:
        return []
    if isinstance(source_types, str):
        source_types = [source_types]
    cleaned = {str(tag).strip().lower() for tag in source_types}
    cleaned.discard("")
    return sorted(cleaned)


def _freshness_segment(
    freshness: Mapping[str, datetime | date | None] | None,
    unit: FreshnessUnit,
) -> str:
    if not freshness:
        return ""
    parts = []
    for source, stamp in freshness.items():
        if stamp is None:
            continue
        parts.append(f"{str(source).strip().lower()}@{floor_timestamp(stamp, unit).isoformat()}")
    return ",".join(sorted(parts))


def build_cache_key(
    question: object,
    requester_id: object,
    source_types: Iterable[str] | None = None,
    *,
    freshness: Mapping[str, datetime | date | None] | None = None,
    unit: FreshnessUnit = "month",
    version: str = DEFAULT_CACHE_VERSION,
) -> str:
    """Return the deterministic cache key for a (question, requester, sources) triple."""

    if requester_id is None or not str(requester_id).strip():
        raise NormalizationError("Requester identifier is required")
    requester = str(requester_id).strip()
    digest = question_hash(question, version=version)
    sources = ",".join(_canonical_sources(source_types))
    key = f"{requester}:{digest}:{sources}"
    fresh = _freshness_segment(freshness, unit)
    if fresh:
        key = f"{key}:{fresh}"
    return key


@dataclass(frozen=True)
class QueryNormalizer:
    """Binds the cache version and freshness unit used to derive keys."""

    version: str = DEFAULT_CACHE_VERSION
    unit: FreshnessUnit = "month"

    def normalize(self, question: object) -> str:
        return normalize_query(question)

    def key_for(
        self,
        question: object,
        requester_id: object,
        source_types: Iterable[str] | None = None,
        *,
        freshness: Mapping[str, datetime | date | None] | None = None,
    ) -> str:
        return build_cache_key(
            question,
            requester_id,
            source_types,
            freshness=freshness,
            unit=self.unit,
            version=self.version,
        )
