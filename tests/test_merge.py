from __future__ import annotations

import pytest

from patmosrag.models import DocumentChunk, DocumentMetadata, MergedResult, SearchCandidate
from patmosrag.retrieval.intent import analyze_query_intent, weights_for_intent
from patmosrag.retrieval.merge import (
    HybridWeights,
    attach_chunks,
    diversify_results,
    merge_candidates,
    min_max_normalize,
    search_confidence,
)


def _sem(chunk_id: str, score: float) -> SearchCandidate:
    return SearchCandidate(chunk_id=chunk_id, score=score, origin="semantic")


def _kw(chunk_id: str, score: float) -> SearchCandidate:
    return SearchCandidate(chunk_id=chunk_id, score=score, origin="keyword")


def _chunk(chunk_id: str, doc_id: str) -> DocumentChunk:
    return DocumentChunk(chunk_id=chunk_id, text=chunk_id, document=DocumentMetadata(document_id=doc_id, title=doc_id))


def test_weights_default_and_validation():
    weights = HybridWeights()
    assert (weights.semantic, weights.keyword) == (0.7, 0.3)
    assert HybridWeights.from_semantic(0.6).keyword == pytest.approx(0.4)
    with pytest.raises(ValueError):
        HybridWeights(semantic=0.7, keyword=0.4)
    with pytest.raises(ValueError):
        HybridWeights(semantic=1.2, keyword=-0.2)


def test_min_max_normalize_bounds_and_edge_cases():
    normalized = min_max_normalize([_sem("a", 0.9), _sem("b", 0.5), _sem("c", 0.7)])
    assert normalized["a"] == 1.0
    assert normalized["b"] == 0.0
    assert normalized["c"] == pytest.approx(0.5)
    assert min_max_normalize([]) == {}
    assert min_max_normalize([_sem("a", 0.4), _sem("b", 0.4)]) == {"a": 1.0, "b": 1.0}


def test_mixed_source_merge_keeps_every_chunk_once():
    semantic = [_sem("c1", 0.9), _sem("c2", 0.5)]
    keyword = [_kw("c2", 1.0), _kw("c3", 0.8)]
    merged = merge_candidates(semantic, keyword, weights=HybridWeights(0.7, 0.3))

    ids = [result.chunk_id for result in merged]
    assert sorted(ids) == ["c1", "c2", "c3"]
    assert ids.count("c1") == 1 and ids.count("c3") == 1
    by_id = {result.chunk_id: result for result in merged}
    assert by_id["c2"].origin == "hybrid"
    assert by_id["c1"].origin == "semantic"
    assert by_id["c3"].origin == "keyword"
    # c3 only matched keyword search at the bottom of its list; c2 matched both.
    assert ids.index("c2") < ids.index("c3")
    assert [r.combined_score for r in merged] == sorted((r.combined_score for r in merged), reverse=True)


def test_merge_never_duplicates_chunk_ids():
    semantic = [_sem("a", 0.9), _sem("a", 0.2), _sem("b", 0.5)]
    keyword = [_kw("a", 3.0), _kw("b", 1.0), _kw("b", 2.0), _kw("c", 0.5)]
    merged = merge_candidates(semantic, keyword)
    ids = [result.chunk_id for result in merged]
    assert len(ids) == len(set(ids)) == 3


def test_single_source_chunks_scale_by_their_weight_exactly():
    weights = HybridWeights(semantic=0.7, keyword=0.3)
    merged = merge_candidates([_sem("a", 0.9), _sem("b", 0.3), _sem("c", 0.6)], [_kw("z", 2.0), _kw("y", 1.0)], weights=weights)
    by_id = {result.chunk_id: result for result in merged}
    for chunk_id in ("a", "b", "c"):
        assert by_id[chunk_id].combined_score == weights.semantic * by_id[chunk_id].semantic_score
        assert by_id[chunk_id].keyword_score == 0.0
    assert by_id["z"].combined_score == weights.keyword * 1.0


def test_empty_keyword_list_keeps_semantic_order_truncated():
    semantic = [_sem("a", 0.9), _sem("b", 0.8), _sem("c", 0.4), _sem("d", 0.1)]
    merged = merge_candidates(semantic, [], top_k=3)
    assert [result.chunk_id for result in merged] == ["a", "b", "c"]
    assert merge_candidates([], []) == []


def test_ties_break_on_semantic_score_then_chunk_id():
    # Both end at 0.5 combined: "k" from keyword, "s" from semantic
    weights = HybridWeights(semantic=0.5, keyword=0.5)
    merged = merge_candidates([_sem("s", 0.9), _sem("low", 0.1)], [_kw("k", 2.0), _kw("low2", 1.0)], weights=weights)
    assert [result.chunk_id for result in merged][:2] == ["s", "k"]

    same = merge_candidates([_sem("b", 0.5), _sem("a", 0.5)], [])
    assert [result.chunk_id for result in same] == ["a", "b"]


def test_diversify_caps_results_per_document():
    results = [
        MergedResult(chunk_id=f"d1-{i}", combined_score=1.0 - i * 0.1, chunk=_chunk(f"d1-{i}", "d1")) for i in range(5)
    ]
    results.append(MergedResult(chunk_id="d2-0", combined_score=0.2, chunk=_chunk("d2-0", "d2")))
    kept = diversify_results(results, 3)
    assert [result.chunk_id for result in kept] == ["d1-0", "d1-1", "d1-2", "d2-0"]
    assert diversify_results(results, 0) == results


def test_attach_chunks_drops_missing_ids():
    merged = [MergedResult(chunk_id="a", combined_score=0.9), MergedResult(chunk_id="gone", combined_score=0.5)]
    hydrated = attach_chunks(merged, {"a": _chunk("a", "d1")})
    assert len(hydrated) == 1
    assert hydrated[0].chunk is not None and hydrated[0].chunk.document.document_id == "d1"


def test_search_confidence_range():
    assert search_confidence([]) == 0.0
    results = merge_candidates([_sem("a", 0.9), _sem("b", 0.85)], [_kw("a", 1.0), _kw("b", 0.9)])
    confidence = search_confidence(results)
    assert 0.0 < confidence <= 1.0


def test_intent_analysis_shifts_weights():
    factual = analyze_query_intent("When was the letter to Ephesus written?")
    conceptual = analyze_query_intent("Explain the significance of the seven seals")
    comparative = analyze_query_intent("Compare the gospel of Mark versus Luke")
    general = analyze_query_intent("patmos")
    assert factual.type == "factual"
    assert conceptual.type == "conceptual"
    assert comparative.type == "comparative"
    assert general.type == "general"
    assert general.suggestions

    default = HybridWeights()
    assert weights_for_intent(factual, default) == HybridWeights(semantic=0.4, keyword=0.6)
    assert weights_for_intent(conceptual, default) == HybridWeights(semantic=0.8, keyword=0.2)
    assert weights_for_intent(general, default) is default
