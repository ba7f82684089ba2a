"""Benchmark harness for PatmosRAG retrieval and caching."""

from .cli import BenchmarkResult, main, run_benchmark

__all__ = ["BenchmarkResult", "main", "run_benchmark"]
