"""Observability helpers for PatmosRAG."""

from __future__ import annotations

import logging

import structlog
from prometheus_client import Counter, Gauge, Histogram

_logger_configured = False


def configure_logging(level: int = logging.INFO) -> None:
    global _logger_configured  # noqa: PLW0603 - module-level guard
    if _logger_configured:
        return
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _logger_configured = True


def bind_correlation_id(correlation_id: str) -> None:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.clear_contextvars()


def get_logger(name: str = "patmosrag") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


class PipelineMetrics:
    """Prometheus metrics for pipeline stages."""

    retrieval_latency = Histogram(
        "patmosrag_retrieval_duration_seconds",
        "Time spent in hybrid search, including both backends.",
        buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
    )
    retrieved_chunk_count = Histogram(
        "patmosrag_retrieved_chunk_count",
        "Number of merged results returned by hybrid search.",
        buckets=(0, 1, 2, 3, 5, 8, 13, 21),
    )
    degraded_searches = Counter(
        "patmosrag_degraded_search_total",
        "Searches answered by only one backend.",
        ["failed_source"],
    )
    cache_lookups = Counter(
        "patmosrag_cache_lookup_total",
        "Response cache lookups by outcome.",
        ["result"],
    )
    cache_errors = Counter(
        "patmosrag_cache_error_total",
        "Response cache backend failures treated as misses.",
        ["operation"],
    )
    first_token_latency = Histogram(
        "patmosrag_first_token_latency_seconds",
        "Time from request start to the first streamed token.",
        buckets=(0.005, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
    )
    time_to_last_token = Histogram(
        "patmosrag_time_to_last_token_seconds",
        "Time from the first streamed token to stream completion.",
        buckets=(0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
    )
    request_latency = Histogram(
        "patmosrag_request_duration_seconds",
        "End-to-end chat latency.",
        ["cache_hit"],
        buckets=(0.005, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
    )
    shadow_overlap = Histogram(
        "patmosrag_shadow_overlap_percent",
        "Share of main-run chunks also returned by the shadow configuration.",
        buckets=(0, 25, 50, 75, 90, 100),
    )
    indexed_chunk_count = Gauge(
        "patmosrag_indexed_chunk_count",
        "Number of chunks held by each index.",
        ["index"],
    )

    @classmethod
    def observe_retrieval(cls, duration_seconds: float, result_count: int) -> None:
        cls.retrieval_latency.observe(duration_seconds)
        cls.retrieved_chunk_count.observe(result_count)

    @classmethod
    def observe_degraded(cls, failed_source: str) -> None:
        cls.degraded_searches.labels(failed_source=failed_source).inc()

    @classmethod
    def observe_cache_lookup(cls, *, hit: bool) -> None:
        cls.cache_lookups.labels(result="hit" if hit else "miss").inc()

    @classmethod
    def observe_cache_error(cls, operation: str) -> None:
        cls.cache_errors.labels(operation=operation).inc()

    @classmethod
    def observe_request(cls, *, ftl_ms: float, ttlt_ms: float, total_ms: float, cache_hit: bool) -> None:
        cls.first_token_latency.observe(ftl_ms / 1000.0)
        cls.time_to_last_token.observe(ttlt_ms / 1000.0)
        cls.request_latency.labels(cache_hit=str(cache_hit).lower()).observe(total_ms / 1000.0)

    @classmethod
    def observe_shadow(cls, overlap_percent: float) -> None:
        cls.shadow_overlap.observe(overlap_percent)


__all__ = [
    "PipelineMetrics",
    "bind_correlation_id",
    "clear_correlation_id",
    "configure_logging",
    "get_logger",
]
