"""Retrieval components."""

from .keyword import KeywordIndex, LexicalKeywordIndex, keyword_relevance
from .merge import HybridWeights, diversify_results, merge_candidates, min_max_normalize
from .service import HybridRetriever, HybridSearchOutcome, RetrievalConfig, Retriever

__all__ = [
    "HybridRetriever",
    "HybridSearchOutcome",
    "HybridWeights",
    "KeywordIndex",
    "LexicalKeywordIndex",
    "RetrievalConfig",
    "Retriever",
    "diversify_results",
    "keyword_relevance",
    "merge_candidates",
    "min_max_normalize",
]
