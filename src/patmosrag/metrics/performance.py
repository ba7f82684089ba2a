"""Per-request latency instrumentation and shadow-run helpers.

Each chat request owns one :class:`PerformanceTimings`. Stages write their
completion timestamp as they finish, in the fixed order of :data:`STAGES`.
Stages that did not run (every stage after ``cache_check`` on a cache hit,
except the streaming ones) stay at ``0.0`` and are ignored by the ordering
check.
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping

from patmosrag.metrics.observability import PipelineMetrics, get_logger

STAGES: tuple[str, ...] = (
    "cache_check",
    "search",
    "rerank",
    "metadata",
    "prompt_build",
    "first_token",
    "stream_complete",
)


@dataclass
class PerformanceTimings:
    start: float
    cache_check: float = 0.0
    search: float = 0.0
    rerank: float = 0.0
    metadata: float = 0.0
    prompt_build: float = 0.0
    first_token: float = 0.0
    stream_complete: float = 0.0
    cache_hit: bool = False
    finalized: bool = False
    clock: Callable[[], float] = field(default=time.perf_counter, repr=False, compare=False)

    def mark(self, stage: str, at: float | None = None) -> float:
        if self.finalized:
            raise RuntimeError("Timing record already finalized")
        if stage not in STAGES:
            raise ValueError(f"Unknown stage: {stage}")
        value = self.clock() if at is None else at
        setattr(self, stage, value)
        return value

    def completed_stages(self) -> list[tuple[str, float]]:
        return [(stage, getattr(self, stage)) for stage in STAGES if getattr(self, stage)]

    def is_monotonic(self) -> bool:
        previous = self.start
        for _, value in self.completed_stages():
            if value < previous:
                return False
            previous = value
        return True

    def elapsed_ms(self, stage: str) -> float:
        value = getattr(self, stage)
        if not value:
            return 0.0
        return (value - self.start) * 1000.0


def create_timings(clock: Callable[[], float] = time.perf_counter) -> PerformanceTimings:
    return PerformanceTimings(start=clock(), clock=clock)


@dataclass(frozen=True)
class PerformanceMetrics:
    """Finalized view of one request's timings."""

    requester_id: str
    session_id: str
    stage_ms: Mapping[str, float]
    total_ms: float
    ftl_ms: float
    ttlt_ms: float
    prompt_tokens: int
    completion_tokens: int
    cache_hit: bool
    flags: Mapping[str, bool]

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def to_log_fields(self) -> dict[str, Any]:
        return {
            "requester_id": self.requester_id,
            "session_id": self.session_id,
            "stage_ms": dict(self.stage_ms),
            "total_ms": round(self.total_ms, 3),
            "ftl_ms": round(self.ftl_ms, 3),
            "ttlt_ms": round(self.ttlt_ms, 3),
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "cache_hit": self.cache_hit,
            "flags": dict(self.flags),
        }


def build_metrics(
    timings: PerformanceTimings,
    *,
    requester_id: str = "",
    session_id: str = "",
    prompt_tokens: int = 0,
    completion_tokens: int = 0,
    flags: Mapping[str, bool] | None = None,
) -> PerformanceMetrics:
    """Derive FTL/TTLT and the per-stage breakdown, then freeze the record."""

    ftl = (timings.first_token - timings.start) * 1000.0 if timings.first_token else 0.0
    ttlt = 0.0
    if timings.first_token and timings.stream_complete:
        ttlt = (timings.stream_complete - timings.first_token) * 1000.0
    completed = timings.completed_stages()
    total = (completed[-1][1] - timings.start) * 1000.0 if completed else 0.0
    timings.finalized = True
    return PerformanceMetrics(
        requester_id=requester_id,
        session_id=session_id,
        stage_ms={stage: timings.elapsed_ms(stage) for stage in STAGES},
        total_ms=total,
        ftl_ms=ftl,
        ttlt_ms=ttlt,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        cache_hit=timings.cache_hit,
        flags=dict(flags or {}),
    )


def emit_metrics(metrics: PerformanceMetrics) -> None:
    get_logger("performance").info("performance.timings", **metrics.to_log_fields())
    PipelineMetrics.observe_request(
        ftl_ms=metrics.ftl_ms,
        ttlt_ms=metrics.ttlt_ms,
        total_ms=metrics.total_ms,
        cache_hit=metrics.cache_hit,
    )


def should_run_shadow_test(sample_rate: float = 0.02, rng: random.Random | None = None) -> bool:
    if not 0.0 <= sample_rate <= 1.0:
        raise ValueError("sample_rate must be within [0, 1]")
    return (rng or random).random() < sample_rate


def _chunk_identifier(item: object) -> str:
    if isinstance(item, str):
        return item
    if isinstance(item, Mapping):
        return str(item.get("chunk_id", item.get("id")))
    return str(getattr(item, "chunk_id"))


def calculate_chunk_overlap(shadow_chunks: Iterable[object], main_chunks: Iterable[object]) -> int:
    """Percentage of the main run's chunks that the shadow run also returned."""

    main_ids = [_chunk_identifier(item) for item in main_chunks]
    if not main_ids:
        return 0
    shadow_ids = {_chunk_identifier(item) for item in shadow_chunks}
    shared = sum(1 for chunk_id in main_ids if chunk_id in shadow_ids)
    return round(shared * 100 / len(main_ids))


@dataclass(frozen=True)
class ShadowRunMetrics:
    requester_id: str
    session_id: str
    query: str
    overlap: int
    citation_delta: int
    shadow_config: Mapping[str, int]
    main_config: Mapping[str, int]

    def to_log_fields(self) -> dict[str, Any]:
        return {
            "requester_id": self.requester_id,
            "session_id": self.session_id,
            "query": self.query,
            "overlap": self.overlap,
            "citation_delta": self.citation_delta,
            "shadow_config": dict(self.shadow_config),
            "main_config": dict(self.main_config),
        }


__all__ = [
    "STAGES",
    "PerformanceMetrics",
    "PerformanceTimings",
    "ShadowRunMetrics",
    "build_metrics",
    "calculate_chunk_overlap",
    "create_timings",
    "emit_metrics",
    "should_run_shadow_test",
]
