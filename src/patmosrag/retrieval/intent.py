"""Query intent heuristics used to shift hybrid weights."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal

from patmosrag.retrieval.merge import HybridWeights

IntentType = Literal["factual", "conceptual", "comparative", "general"]

_FACTUAL = (
    re.compile(r"^(what|when|where|who|which|how much|how many)"),
    re.compile(r"\b(define|definition|meaning|date|number|name|list)\b"),
    re.compile(r"\b(is|are|was|were|will be|has|have|had)\s"),
)
_CONCEPTUAL = (
    re.compile(r"^(how|why|explain|describe)"),
    re.compile(r"\b(understand|concept|theory|principle|process|mechanism)\b"),
    re.compile(r"\b(significance|importance|impact|effect|influence)\b"),
)
_COMPARATIVE = (
    re.compile(r"\b(compare|comparison|versus|vs|difference|similar|different)\b"),
    re.compile(r"\b(better|worse|best|worst|more|less|advantage|disadvantage)\b"),
    re.compile(r"\b(between|among|against)\b.*\b(and|or)\b"),
)

INTENT_WEIGHTS: dict[str, HybridWeights] = {
    "factual": HybridWeights(semantic=0.4, keyword=0.6),
    "conceptual": HybridWeights(semantic=0.8, keyword=0.2),
    "comparative": HybridWeights(semantic=0.6, keyword=0.4),
}


@dataclass(frozen=True)
class QueryIntent:
    type: IntentType
    confidence: float
    suggestions: tuple[str, ...] = field(default_factory=tuple)


def analyze_query_intent(query: str) -> QueryIntent:
    lowered = query.lower()
    suggestions: list[str] = []
    if len(query) < 10:
        suggestions.append("Try adding more specific terms to your question")
    if "?" not in lowered and ("what" in lowered or "how" in lowered):
        suggestions.append("Consider rephrasing as a complete question")

    factual = sum(1 for pattern in _FACTUAL if pattern.search(lowered))
    conceptual = sum(1 for pattern in _CONCEPTUAL if pattern.search(lowered))
    comparative = sum(1 for pattern in _COMPARATIVE if pattern.search(lowered))
    best = max(factual, conceptual, comparative)
    if best == 0:
        return QueryIntent(type="general", confidence=0.5, suggestions=tuple(suggestions))
    # Ties resolve in factual > conceptual > comparative order.
    if factual == best:
        intent: IntentType = "factual"
    elif conceptual == best:
        intent = "conceptual"
    else:
        intent = "comparative"
    return QueryIntent(type=intent, confidence=min(best / 3, 1.0), suggestions=tuple(suggestions))


def weights_for_intent(intent: QueryIntent, default: HybridWeights) -> HybridWeights:
    return INTENT_WEIGHTS.get(intent.type, default)
