"""Score normalization and weighted merging of semantic and keyword results."""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Iterable, Sequence

from patmosrag.models import MergedResult, SearchCandidate


@dataclass(frozen=True)
class HybridWeights:
    """Linear weights for the two origins; they must sum to 1."""

    semantic: float = 0.7
    keyword: float = 0.3

    def __post_init__(self) -> None:
        if self.semantic < 0.0 or self.keyword < 0.0:
            raise ValueError("Hybrid weights must be non-negative")
        if not math.isclose(self.semantic + self.keyword, 1.0, abs_tol=1e-9):
            raise ValueError(f"Hybrid weights must sum to 1, got {self.semantic} + {self.keyword}")

    @classmethod
    def from_semantic(cls, semantic: float) -> "HybridWeights":
        return cls(semantic=semantic, keyword=1.0 - semantic)


def best_scores(candidates: Iterable[SearchCandidate]) -> dict[str, float]:
    """Collapse repeated chunk ids, keeping each chunk's highest raw score."""

    scores: dict[str, float] = {}
    for candidate in candidates:
        current = scores.get(candidate.chunk_id)
        if current is None or candidate.score > current:
            scores[candidate.chunk_id] = candidate.score
    return scores


def min_max_normalize(candidates: Iterable[SearchCandidate]) -> dict[str, float]:
    """Map one list's scores into [0, 1].

    When every score is equal the list carries no ranking signal, so each
    entry is treated as a full-strength match.
    """

    scores = best_scores(candidates)
    if not scores:
        return {}
    low = min(scores.values())
    high = max(scores.values())
    if high == low:
        return {chunk_id: 1.0 for chunk_id in scores}
    span = high - low
    return {chunk_id: (score - low) / span for chunk_id, score in scores.items()}


def merge_candidates(
    semantic: Sequence[SearchCandidate],
    keyword: Sequence[SearchCandidate],
    *,
    weights: HybridWeights | None = None,
    top_k: int | None = None,
) -> list[MergedResult]:
    """Combine both lists into one ranked, duplicate-free list.

    Ordering is by combined score, then by normalized semantic score, then by
    chunk id, so identical inputs always produce identical output.
    """

    weights = weights or HybridWeights()
    semantic_norm = min_max_normalize(semantic)
    keyword_norm = min_max_normalize(keyword)

    merged: list[MergedResult] = []
    for chunk_id in semantic_norm.keys() | keyword_norm.keys():
        in_semantic = chunk_id in semantic_norm
        in_keyword = chunk_id in keyword_norm
        semantic_score = semantic_norm.get(chunk_id, 0.0)
        keyword_score = keyword_norm.get(chunk_id, 0.0)
        combined = weights.semantic * semantic_score + weights.keyword * keyword_score
        if in_semantic and in_keyword:
            origin = "hybrid"
        elif in_semantic:
            origin = "semantic"
        else:
            origin = "keyword"
        merged.append(
            MergedResult(
                chunk_id=chunk_id,
                combined_score=combined,
                semantic_score=semantic_score,
                keyword_score=keyword_score,
                origin=origin,
            ),
        )

    merged.sort(key=lambda item: (-item.combined_score, -item.semantic_score, item.chunk_id))
    if top_k is not None:
        merged = merged[: max(top_k, 0)]
    return merged


def diversify_results(results: Sequence[MergedResult], max_per_document: int) -> list[MergedResult]:
    """Keep at most ``max_per_document`` results from any single document."""

    if max_per_document <= 0:
        return list(results)
    counts: dict[str, int] = {}
    kept: list[MergedResult] = []
    for result in results:
        document_id = result.chunk.document.document_id if result.chunk else result.chunk_id
        seen = counts.get(document_id, 0)
        if seen >= max_per_document:
            continue
        counts[document_id] = seen + 1
        kept.append(result)
    return kept


def search_confidence(results: Sequence[MergedResult]) -> float:
    """Heuristic confidence in [0, 1] for a ranked result list."""

    if not results:
        return 0.0
    top = results[0].combined_score
    confidence = min(top * 0.7, 0.7)
    if len(results) >= 2 and top > 0 and results[1].combined_score / top > 0.8:
        confidence += 0.15
    hybrid = sum(1 for result in results if result.origin == "hybrid")
    if hybrid:
        confidence += (hybrid / len(results)) * 0.15
    return min(confidence, 1.0)


def attach_chunks(results: Sequence[MergedResult], chunks) -> list[MergedResult]:
    """Hydrate results with chunk content, dropping ids the repository no longer has."""

    return [replace(result, chunk=chunks[result.chunk_id]) for result in results if result.chunk_id in chunks]
