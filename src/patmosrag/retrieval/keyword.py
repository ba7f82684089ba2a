"""Lexical keyword search over indexed chunks."""

from __future__ import annotations

import re
import threading
from collections import defaultdict
from typing import Mapping, Protocol, Sequence

from patmosrag.models import DocumentChunk, SearchCandidate

_NON_WORD = re.compile(r"[^\w\s]")
_WORD = re.compile(r"\w+")


class KeywordIndex(Protocol):
    """Full-text search returning lexical relevance scores."""

    def search(self, query_text: str, top_k: int) -> Sequence[SearchCandidate]:
        """Return up to ``top_k`` candidates ordered by relevance."""


def query_terms(query: str) -> list[str]:
    return [term for term in _NON_WORD.sub(" ", query.lower()).split() if len(term) > 2]


def keyword_relevance(query: str, content: str) -> float:
    """Score how well ``content`` covers the terms of ``query``, in [0, 1].

    Exact word matches count double in term frequency and earn a flat bonus;
    early first occurrence and repeated occurrences add smaller bonuses. The
    sum is scaled by the fraction of query terms found.
    """

    terms = query_terms(query)
    if not terms:
        return 0.0
    content_lower = content.lower()
    if not content_lower:
        return 0.0
    word_count = len(content_lower.split()) or 1

    total = 0.0
    matched = 0
    for term in terms:
        exact = len(re.findall(rf"\b{re.escape(term)}\b", content_lower))
        partial = max(content_lower.count(term) - exact, 0)
        if not exact and not partial:
            continue
        matched += 1
        term_frequency = (exact * 2 + partial) / word_count
        first = content_lower.find(term)
        position_bonus = (1 - first / len(content_lower)) * 0.2 if first >= 0 else 0.0
        exact_bonus = 0.3 if exact else 0.0
        frequency_bonus = min((exact + partial) * 0.1, 0.5)
        total += term_frequency + position_bonus + exact_bonus + frequency_bonus

    coverage = matched / len(terms)
    return min((total + coverage * 0.4) * coverage, 1.0)


class LexicalKeywordIndex:
    """In-process inverted index scored with :func:`keyword_relevance`."""

    def __init__(self) -> None:
        self._chunks: dict[str, DocumentChunk] = {}
        self._postings: defaultdict[str, set[str]] = defaultdict(set)
        self._lock = threading.RLock()

    def upsert(self, chunks: Sequence[DocumentChunk]) -> Sequence[str]:
        with self._lock:
            for chunk in chunks:
                if chunk.chunk_id in self._chunks:
                    self._unindex(self._chunks[chunk.chunk_id])
                self._chunks[chunk.chunk_id] = chunk
                for token in set(_WORD.findall(chunk.text.lower())):
                    self._postings[token].add(chunk.chunk_id)
        return [chunk.chunk_id for chunk in chunks]

    def search(self, query_text: str, top_k: int) -> Sequence[SearchCandidate]:
        if top_k <= 0:
            return []
        terms = query_terms(query_text)
        with self._lock:
            candidate_ids: set[str] = set()
            for term in terms:
                candidate_ids.update(self._postings.get(term, ()))
            scored = [
                (chunk_id, keyword_relevance(query_text, self._chunks[chunk_id].text))
                for chunk_id in candidate_ids
            ]
        scored = [item for item in scored if item[1] > 0.0]
        scored.sort(key=lambda item: (-item[1], item[0]))
        return [SearchCandidate(chunk_id=chunk_id, score=score, origin="keyword") for chunk_id, score in scored[:top_k]]

    def get_chunks(self, chunk_ids: Sequence[str]) -> Mapping[str, DocumentChunk]:
        with self._lock:
            return {chunk_id: self._chunks[chunk_id] for chunk_id in chunk_ids if chunk_id in self._chunks}

    def delete_document(self, document_id: str) -> int:
        with self._lock:
            doomed = [chunk for chunk in self._chunks.values() if chunk.document.document_id == document_id]
            for chunk in doomed:
                self._unindex(chunk)
                del self._chunks[chunk.chunk_id]
        return len(doomed)

    def reset(self) -> None:
        with self._lock:
            self._chunks.clear()
            self._postings.clear()

    def count(self) -> int:
        return len(self._chunks)

    def _unindex(self, chunk: DocumentChunk) -> None:
        for token in set(_WORD.findall(chunk.text.lower())):
            postings = self._postings.get(token)
            if postings is None:
                continue
            postings.discard(chunk.chunk_id)
            if not postings:
                del self._postings[token]
