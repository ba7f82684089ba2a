"""Chat orchestration: cache lookup, hybrid search, streaming generation."""

from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Iterator, Literal, Mapping, Sequence
from uuid import NAMESPACE_URL, uuid5

from patmosrag.cache.keys import QueryNormalizer
from patmosrag.cache.store import FailOpenCache, ResponseCache, SingleFlight
from patmosrag.errors import GenerationAborted, GenerationError
from patmosrag.metrics.observability import get_logger
from patmosrag.metrics.performance import PerformanceTimings, build_metrics, create_timings, emit_metrics
from patmosrag.models import Answer, CacheEntry, Citation, MergedResult, source_freshness
from patmosrag.retrieval.service import HybridSearchOutcome, Retriever
from patmosrag.services.generation import GenerationBackend, TemplateGenerator, count_tokens
from patmosrag.services.shadow import ShadowRunner


@dataclass(frozen=True)
class PromptBuilderConfig:
    """Configuration for context assembly."""

    context_chunk_limit: int = 8
    chunks_per_document: int = 4
    max_citations: int = 8


class PromptBuilder:
    """Selects context chunks and formats them for the generation backend."""

    def __init__(self, config: PromptBuilderConfig | None = None) -> None:
        self._config = config or PromptBuilderConfig()

    def select_context(self, results: Sequence[MergedResult]) -> list[MergedResult]:
        # Results arrive ranked, so first appearance orders documents by their best chunk.
        grouped: OrderedDict[str, list[MergedResult]] = OrderedDict()
        for result in results:
            if result.chunk is None:
                continue
            group = grouped.setdefault(result.chunk.document.document_id, [])
            if len(group) < self._config.chunks_per_document:
                group.append(result)
        selected = [result for group in grouped.values() for result in group]
        return selected[: self._config.context_chunk_limit]

    def build_context(self, results: Sequence[MergedResult]) -> str:
        blocks = []
        for result in results:
            chunk = result.chunk
            if chunk is None:
                continue
            byline = f" by {chunk.document.author}" if chunk.document.author else ""
            blocks.append(f"=== {chunk.document.title}{byline} ===\n{chunk.text}")
        return "\n\n".join(blocks)

    def build_citations(self, results: Sequence[MergedResult]) -> list[Citation]:
        citations: list[Citation] = []
        seen: set[str] = set()
        for result in results:
            chunk = result.chunk
            if chunk is None or chunk.document.document_id in seen:
                continue
            seen.add(chunk.document.document_id)
            citations.append(
                Citation(
                    chunk_id=chunk.chunk_id,
                    document_id=chunk.document.document_id,
                    title=chunk.document.title,
                    author=chunk.document.author,
                    source_type=chunk.source_type,
                    score=result.combined_score,
                ),
            )
        return citations[: self._config.max_citations]


@dataclass(frozen=True)
class SourceState:
    """Source types (and their sync stamps) seen in a retrieval."""

    source_types: tuple[str, ...] = ()
    freshness: Mapping[str, datetime] = field(default_factory=dict)

    @classmethod
    def from_outcome(cls, outcome: HybridSearchOutcome) -> "SourceState":
        freshness: dict[str, datetime] = {}
        for result in outcome.results:
            if result.chunk is None:
                continue
            stamp = source_freshness(result.chunk.source_metadata)
            if stamp is None:
                continue
            current = freshness.get(result.chunk.source_type)
            if current is None or stamp > current:
                freshness[result.chunk.source_type] = stamp
        return cls(source_types=tuple(outcome.source_types), freshness=freshness)


class SourceStateTracker:
    """Remembers the source state of each session's last retrieval."""

    def __init__(self, max_sessions: int = 10_000) -> None:
        self._states: OrderedDict[str, SourceState] = OrderedDict()
        self._max_sessions = max_sessions
        self._lock = threading.Lock()

    def get(self, session_key: str) -> SourceState:
        with self._lock:
            state = self._states.get(session_key)
            if state is None:
                return SourceState()
            self._states.move_to_end(session_key)
            return state

    def update(self, session_key: str, state: SourceState) -> None:
        with self._lock:
            self._states[session_key] = state
            self._states.move_to_end(session_key)
            while len(self._states) > self._max_sessions:
                self._states.popitem(last=False)


@dataclass(frozen=True)
class StreamEvent:
    kind: Literal["token", "complete"]
    text: str = ""
    answer: Answer | None = None


class QueryService:
    """Orchestrates cache lookup, retrieval and streaming generation for questions."""

    def __init__(
        self,
        retriever: Retriever,
        generator: GenerationBackend | None = None,
        prompt_builder: PromptBuilder | None = None,
        *,
        cache: ResponseCache | None = None,
        normalizer: QueryNormalizer | None = None,
        shadow_runner: ShadowRunner | None = None,
        single_flight: SingleFlight | None = None,
        single_flight_timeout: float = 30.0,
        source_tracker: SourceStateTracker | None = None,
        flags: Mapping[str, bool] | None = None,
    ) -> None:
        self._retriever = retriever
        self._generator = generator or TemplateGenerator()
        self._prompt_builder = prompt_builder or PromptBuilder()
        self._cache = FailOpenCache(cache) if cache is not None else None
        self._normalizer = normalizer or QueryNormalizer()
        self._shadow_runner = shadow_runner
        self._single_flight = single_flight
        self._single_flight_timeout = single_flight_timeout
        self._sources = source_tracker or SourceStateTracker()
        self._flags = dict(flags or {})
        self._logger = get_logger("query")

    def answer(
        self,
        question: str,
        *,
        requester_id: str,
        session_id: str | None = None,
        top_k: int | None = None,
        source_types: Iterable[str] | None = None,
    ) -> Answer:
        """Run the full pipeline and return the completed answer."""

        for event in self.stream(
            question,
            requester_id=requester_id,
            session_id=session_id,
            top_k=top_k,
            source_types=source_types,
        ):
            if event.kind == "complete" and event.answer is not None:
                return event.answer
        raise GenerationError("Stream ended without a completed answer")

    def stream(
        self,
        question: str,
        *,
        requester_id: str,
        session_id: str | None = None,
        top_k: int | None = None,
        source_types: Iterable[str] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> Iterator[StreamEvent]:
        """Yield answer tokens, then one ``complete`` event carrying the :class:`Answer`.

        Nothing is cached unless generation runs to completion; a set
        ``cancel_event`` or a consumer that stops iterating leaves the cache untouched.
        """

        timings = create_timings()
        self._normalizer.normalize(question)
        session_key = f"{requester_id}:{session_id or '-'}"
        if source_types is not None:
            state = SourceState(source_types=tuple(source_types))
        else:
            state = self._sources.get(session_key)
        lookup_key = self._normalizer.key_for(question, requester_id, state.source_types, freshness=state.freshness)

        entry = self._cache.get(lookup_key) if self._cache is not None else None
        leader = False
        try:
            if entry is None and self._cache is not None and self._single_flight is not None:
                leader, done = self._single_flight.acquire(lookup_key)
                if not leader:
                    done.wait(self._single_flight_timeout)
                # The previous leader may have filled the key since the first lookup.
                entry = self._cache.get(lookup_key)
            timings.cache_hit = entry is not None
            timings.mark("cache_check")
            self._logger.info("cache.lookup", cache_key=lookup_key, hit=timings.cache_hit)

            if entry is not None:
                yield from self._serve_cached(question, entry, timings, requester_id, session_id)
                return

            yield from self._generate(
                question,
                timings,
                requester_id=requester_id,
                session_id=session_id,
                session_key=session_key,
                top_k=top_k,
                cancel_event=cancel_event,
                pinned_sources=source_types is not None,
            )
        finally:
            if leader:
                self._single_flight.release(lookup_key)

    def _serve_cached(
        self,
        question: str,
        entry: CacheEntry,
        timings: PerformanceTimings,
        requester_id: str,
        session_id: str | None,
    ) -> Iterator[StreamEvent]:
        timings.mark("first_token")
        yield StreamEvent(kind="token", text=entry.answer)
        timings.mark("stream_complete")
        metrics = build_metrics(
            timings,
            requester_id=requester_id,
            session_id=session_id or "",
            completion_tokens=count_tokens(entry.answer),
            flags=self._flags,
        )
        emit_metrics(metrics)
        yield StreamEvent(
            kind="complete",
            answer=Answer(
                text=entry.answer,
                citations=entry.citations,
                query_id=self._query_id(requester_id, question),
                latency_ms=metrics.total_ms,
                cache_hit=True,
                metrics=metrics,
            ),
        )

    def _generate(
        self,
        question: str,
        timings: PerformanceTimings,
        *,
        requester_id: str,
        session_id: str | None,
        session_key: str,
        top_k: int | None,
        cancel_event: threading.Event | None,
        pinned_sources: bool,
    ) -> Iterator[StreamEvent]:
        outcome = self._retriever.search(question, top_k=top_k, timings=timings, requester_id=requester_id)
        if self._shadow_runner is not None:
            self._shadow_runner.maybe_run(
                question,
                outcome,
                main_top_k=top_k or len(outcome.results),
                requester_id=requester_id,
                session_id=session_id or "",
            )

        context_results = self._prompt_builder.select_context(outcome.results)
        context = self._prompt_builder.build_context(context_results)
        citations = self._prompt_builder.build_citations(outcome.results)
        timings.mark("prompt_build")

        parts: list[str] = []
        try:
            for token in self._generator.stream(question=question, context=context, citations=context_results):
                if cancel_event is not None and cancel_event.is_set():
                    raise GenerationAborted("Client cancelled the stream")
                if not parts:
                    timings.mark("first_token")
                parts.append(token)
                yield StreamEvent(kind="token", text=token)
        except GenerationError:
            self._logger.warning("generation.failed", question=question, tokens=len(parts))
            raise
        except Exception as exc:
            self._logger.error("generation.failed", question=question, tokens=len(parts), detail=str(exc))
            raise GenerationError(f"Generation failed: {exc}") from exc
        if cancel_event is not None and cancel_event.is_set():
            raise GenerationAborted("Client cancelled the stream")
        if not parts:
            timings.mark("first_token")
        timings.mark("stream_complete")
        text = "".join(parts)

        state = SourceState.from_outcome(outcome)
        if not pinned_sources:
            self._sources.update(session_key, state)
        if self._cache is not None and text and outcome.results and not outcome.degraded:
            write_key = self._normalizer.key_for(question, requester_id, state.source_types, freshness=state.freshness)
            self._cache.put(write_key, CacheEntry(answer=text, citations=tuple(citations)))

        metrics = build_metrics(
            timings,
            requester_id=requester_id,
            session_id=session_id or "",
            prompt_tokens=count_tokens(context) + count_tokens(question),
            completion_tokens=count_tokens(text),
            flags=self._flags,
        )
        emit_metrics(metrics)
        yield StreamEvent(
            kind="complete",
            answer=Answer(
                text=text,
                citations=tuple(citations),
                query_id=self._query_id(requester_id, question),
                latency_ms=metrics.total_ms,
                cache_hit=False,
                degraded=outcome.degraded,
                failed_sources=outcome.failed_sources,
                metrics=metrics,
            ),
        )

    @staticmethod
    def _query_id(requester_id: str, question: str) -> str:
        return uuid5(NAMESPACE_URL, f"{requester_id}:{question}").hex


__all__ = [
    "PromptBuilder",
    "PromptBuilderConfig",
    "QueryService",
    "SourceState",
    "SourceStateTracker",
    "StreamEvent",
]
