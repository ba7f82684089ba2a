"""FastAPI application exposing PatmosRAG services."""

from __future__ import annotations

import json
import threading
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Iterable
from uuid import uuid4

import chromadb
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.concurrency import iterate_in_threadpool, run_in_threadpool

from patmosrag.api.schemas import (
    CacheStatsResponse,
    ChatRequest,
    ChatResponse,
    ChunkIngestionRequest,
    ChunkIngestionResponse,
    ChunkModel,
    CitationModel,
    DocumentSummary,
    IndexStatsResponse,
)
from patmosrag.cache import InMemoryResponseCache, QueryNormalizer, RedisResponseCache, ResponseCache, SingleFlight
from patmosrag.config import Settings, get_settings
from patmosrag.embeddings import ChromaVectorStore, EmbeddingConfig, FallbackChunkRepository, ModelEmbeddingBackend
from patmosrag.errors import CacheBackendError, GenerationError, NormalizationError, SearchBackendError
from patmosrag.metrics.observability import (
    PipelineMetrics,
    bind_correlation_id,
    clear_correlation_id,
    configure_logging,
    get_logger,
)
from patmosrag.models import Answer, DocumentChunk, DocumentMetadata, parse_source_metadata
from patmosrag.retrieval import HybridRetriever, HybridWeights, LexicalKeywordIndex, RetrievalConfig
from patmosrag.services.generation import GenerationConfig, QwenGenerator, TemplateGenerator
from patmosrag.services.query import PromptBuilder, PromptBuilderConfig, QueryService
from patmosrag.services.shadow import ShadowRunner


@dataclass(frozen=True)
class AppDependencies:
    store: ChromaVectorStore
    keyword_index: LexicalKeywordIndex
    retriever: HybridRetriever
    query_service: QueryService
    cache: ResponseCache | None = None
    shadow_runner: ShadowRunner | None = None


def retrieval_config_from_settings(settings: Settings) -> RetrievalConfig:
    return RetrievalConfig(
        top_k=settings.search_max_results,
        max_top_k=settings.search_max_top_k,
        weights=HybridWeights(semantic=settings.hybrid_semantic_weight, keyword=settings.hybrid_keyword_weight),
        adaptive_weights=settings.hybrid_adaptive_weights,
        min_semantic_score=settings.min_semantic_score,
        min_keyword_score=settings.min_keyword_score,
        max_chunks_per_document=settings.max_chunks_per_document,
        timeout_seconds=settings.search_timeout_seconds,
    )


def build_cache(settings: Settings) -> ResponseCache | None:
    if not settings.cache_enabled:
        return None
    if settings.cache_backend == "redis":
        return RedisResponseCache.from_url(
            settings.redis_url,
            namespace=settings.cache_namespace,
            ttl_seconds=settings.cache_ttl_seconds,
        )
    return InMemoryResponseCache(max_entries=settings.cache_max_entries, ttl_seconds=settings.cache_ttl_seconds)


def _build_dependencies(settings: Settings) -> AppDependencies:
    embedding_backend = ModelEmbeddingBackend(
        EmbeddingConfig(
            model=settings.embedding_model,
            dim=settings.embedding_dim,
            use_model=settings.use_model_embeddings,
            normalize=True,
        ),
    )
    chroma_client = None
    if settings.chroma_host:
        chroma_client = chromadb.HttpClient(
            host=settings.chroma_host,
            port=settings.chroma_port or 8000,
            ssl=settings.chroma_ssl,
        )
    store = ChromaVectorStore(
        embedding_backend,
        collection_name=settings.chroma_collection,
        client=chroma_client,
        persist_directory=None if chroma_client else settings.chroma_persist_dir,
    )
    keyword_index = LexicalKeywordIndex()
    keyword_index.upsert(list(store.all_chunks()))

    retrieval_config = retrieval_config_from_settings(settings)
    retriever = HybridRetriever(
        embedding_backend,
        store,
        keyword_index,
        repository=FallbackChunkRepository(keyword_index, store, on_fallback=keyword_index.upsert),
        config=retrieval_config,
    )
    shadow_runner = None
    if settings.shadow_sample_rate > 0:
        shadow_runner = ShadowRunner(
            retriever,
            RetrievalConfig(
                top_k=settings.shadow_top_k,
                max_top_k=settings.search_max_top_k,
                weights=retrieval_config.weights,
                min_semantic_score=settings.min_semantic_score,
                min_keyword_score=settings.min_keyword_score,
                max_chunks_per_document=settings.shadow_max_chunks_per_document,
                timeout_seconds=settings.search_timeout_seconds,
            ),
            sample_rate=settings.shadow_sample_rate,
            max_workers=settings.shadow_workers,
        )
    generator = QwenGenerator(
        GenerationConfig(
            model=settings.generator_model,
            max_new_tokens=settings.generator_max_new_tokens,
            temperature=settings.generator_temperature,
            use_model=settings.use_model_generator,
        ),
        fallback=TemplateGenerator(),
    )
    cache = build_cache(settings)
    query_service = QueryService(
        retriever,
        generator,
        PromptBuilder(
            PromptBuilderConfig(
                context_chunk_limit=settings.context_chunk_limit,
                chunks_per_document=settings.context_chunks_per_document,
                max_citations=settings.max_citations,
            ),
        ),
        cache=cache,
        normalizer=QueryNormalizer(version=settings.cache_version, unit=settings.cache_freshness_unit),
        shadow_runner=shadow_runner,
        single_flight=SingleFlight() if settings.cache_single_flight else None,
        single_flight_timeout=settings.cache_single_flight_timeout_seconds,
        flags=settings.feature_flags,
    )
    return AppDependencies(
        store=store,
        keyword_index=keyword_index,
        retriever=retriever,
        query_service=query_service,
        cache=cache,
        shadow_runner=shadow_runner,
    )


def create_app(*, settings: Settings | None = None, dependencies: AppDependencies | None = None) -> FastAPI:
    settings = settings or get_settings()
    deps = dependencies or _build_dependencies(settings)

    configure_logging()
    logger = get_logger("api")

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        deps.retriever.close()
        if deps.shadow_runner is not None:
            deps.shadow_runner.close()

    app = FastAPI(title="PatmosRAG API", version="0.1.0", lifespan=lifespan)
    app.state.dependencies = deps

    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_allow_origins),
            allow_credentials=settings.cors_allow_credentials,
            allow_methods=list(settings.cors_allow_methods),
            allow_headers=list(settings.cors_allow_headers),
        )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Request-ID", uuid4().hex)
        request.state.correlation_id = correlation_id
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    def _error_response(request: Request, status_code: int, event: str, detail: str) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        logger.error(event, correlation_id=correlation_id, detail=detail)
        return JSONResponse(status_code=status_code, content={"detail": detail, "correlation_id": correlation_id})

    @app.exception_handler(NormalizationError)
    async def handle_normalization_error(request: Request, exc: NormalizationError) -> JSONResponse:
        return _error_response(request, status.HTTP_422_UNPROCESSABLE_ENTITY, "request.invalid", str(exc))

    @app.exception_handler(SearchBackendError)
    async def handle_search_error(request: Request, exc: SearchBackendError) -> JSONResponse:
        return _error_response(request, status.HTTP_503_SERVICE_UNAVAILABLE, "search.unavailable", str(exc))

    @app.exception_handler(CacheBackendError)
    async def handle_cache_error(request: Request, exc: CacheBackendError) -> JSONResponse:
        return _error_response(request, status.HTTP_503_SERVICE_UNAVAILABLE, "cache.unavailable", str(exc))

    @app.exception_handler(GenerationError)
    async def handle_generation_error(request: Request, exc: GenerationError) -> JSONResponse:
        return _error_response(request, status.HTTP_502_BAD_GATEWAY, "generation.error", str(exc))

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        logger.error("unhandled.error", correlation_id=correlation_id, detail=str(exc))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal Server Error", "correlation_id": correlation_id},
        )

    def get_dependencies(request: Request) -> AppDependencies:
        return request.app.state.dependencies

    def get_query_service(dep: AppDependencies = Depends(get_dependencies)) -> QueryService:
        return dep.query_service

    @app.post("/chat", response_model=ChatResponse)
    async def chat(payload: ChatRequest, service: QueryService = Depends(get_query_service)) -> ChatResponse:
        answer = await run_in_threadpool(
            service.answer,
            payload.question,
            requester_id=payload.requester_id,
            session_id=payload.session_id,
            top_k=payload.top_k,
            source_types=payload.source_types,
        )
        return _to_response(answer)

    @app.post("/chat/stream")
    async def chat_stream(
        payload: ChatRequest,
        request: Request,
        service: QueryService = Depends(get_query_service),
    ) -> StreamingResponse:
        # Reject malformed questions before the stream opens so they map to 422.
        QueryNormalizer().normalize(payload.question)
        if not payload.requester_id.strip():
            raise NormalizationError("Requester identifier is required")
        cancel = threading.Event()
        events = service.stream(
            payload.question,
            requester_id=payload.requester_id,
            session_id=payload.session_id,
            top_k=payload.top_k,
            source_types=payload.source_types,
            cancel_event=cancel,
        )
        correlation_id = getattr(request.state, "correlation_id", "-")

        async def iter_sse() -> AsyncIterator[str]:
            yield ": heartbeat\n\n"
            try:
                async for event in iterate_in_threadpool(events):
                    if event.kind == "token":
                        yield _sse("token", {"text": event.text})
                    elif event.answer is not None:
                        yield _sse("complete", _to_response(event.answer).model_dump())
            except (SearchBackendError, GenerationError) as exc:
                code = 503 if isinstance(exc, SearchBackendError) else 502
                logger.error("stream.error", correlation_id=correlation_id, detail=str(exc))
                yield _sse("error", {"detail": str(exc), "status": code, "correlation_id": correlation_id})
            finally:
                if not cancel.is_set():
                    cancel.set()

        return StreamingResponse(iter_sse(), media_type="text/event-stream")

    @app.post("/chunks", response_model=ChunkIngestionResponse, status_code=status.HTTP_201_CREATED)
    async def index_chunks(
        payload: ChunkIngestionRequest,
        dep: AppDependencies = Depends(get_dependencies),
    ) -> ChunkIngestionResponse:
        try:
            chunks = [_to_chunk(item) for item in payload.chunks]
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
        await run_in_threadpool(dep.store.upsert, chunks)
        dep.keyword_index.upsert(chunks)
        logger.info("index.upsert", chunks=len(chunks))
        return ChunkIngestionResponse(indexed=len(chunks), documents=_build_document_summaries(chunks))

    @app.get("/metrics")
    async def metrics() -> Response:
        payload = generate_latest()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        from patmosrag import __version__

        return {"status": "ok", "version": __version__, "environment": settings.environment}

    @app.head("/healthz")
    async def healthcheck_head() -> Response:
        return Response(status_code=status.HTTP_200_OK)

    @app.get("/livez")
    async def liveness() -> dict[str, str]:
        return {"status": "alive"}

    @app.get("/healthz/ready")
    async def readiness(dep: AppDependencies = Depends(get_dependencies)) -> dict[str, str]:
        try:
            _ = dep.store.count()
            return {"status": "ready"}
        except Exception as exc:  # pragma: no cover - depends on remote chroma
            return {"status": "error", "detail": str(exc)}

    @app.delete("/index", status_code=status.HTTP_204_NO_CONTENT)
    async def reset_index(
        document_id: str | None = None,
        dep: AppDependencies = Depends(get_dependencies),
    ) -> Response:
        if document_id:
            dep.store.delete_document(document_id)
            dep.keyword_index.delete_document(document_id)
        else:
            dep.store.reset()
            dep.keyword_index.reset()
        logger.info("index.reset", document_id=document_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/index/stats", response_model=IndexStatsResponse)
    async def index_stats(dep: AppDependencies = Depends(get_dependencies)) -> IndexStatsResponse:
        total = dep.store.count()
        keyword_total = dep.keyword_index.count()
        PipelineMetrics.indexed_chunk_count.labels(index="vector").set(total)
        PipelineMetrics.indexed_chunk_count.labels(index="keyword").set(keyword_total)
        return IndexStatsResponse(
            collection=settings.chroma_collection,
            total_chunks=total,
            keyword_chunks=keyword_total,
        )

    @app.get("/cache/stats", response_model=CacheStatsResponse)
    async def cache_stats(dep: AppDependencies = Depends(get_dependencies)) -> CacheStatsResponse:
        if dep.cache is None:
            return CacheStatsResponse(backend=settings.cache_backend, enabled=False)
        stats = await run_in_threadpool(dep.cache.stats)
        return CacheStatsResponse(
            backend=settings.cache_backend,
            enabled=True,
            hits=stats.hits,
            misses=stats.misses,
            hit_rate=stats.hit_rate,
            entries=stats.entries,
            evictions=stats.evictions,
        )

    @app.delete("/cache", status_code=status.HTTP_204_NO_CONTENT)
    async def clear_cache(dep: AppDependencies = Depends(get_dependencies)) -> Response:
        if dep.cache is not None:
            await run_in_threadpool(dep.cache.clear)
            logger.info("cache.cleared", backend=settings.cache_backend)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    return app


def _sse(event: str, payload: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(payload)}\n\n"


def _to_response(answer: Answer) -> ChatResponse:
    return ChatResponse(
        query_id=answer.query_id,
        answer=answer.text,
        citations=[
            CitationModel(
                chunk_id=citation.chunk_id,
                document_id=citation.document_id,
                title=citation.title,
                author=citation.author,
                source_type=citation.source_type,
                score=citation.score,
            )
            for citation in answer.citations
        ],
        cache_hit=answer.cache_hit,
        degraded=answer.degraded,
        failed_sources=list(answer.failed_sources),
        latency_ms=answer.latency_ms,
        ftl_ms=answer.metrics.ftl_ms if answer.metrics else None,
        ttlt_ms=answer.metrics.ttlt_ms if answer.metrics else None,
    )


def _to_chunk(item: ChunkModel) -> DocumentChunk:
    return DocumentChunk(
        chunk_id=item.chunk_id,
        text=item.text,
        document=DocumentMetadata(document_id=item.document_id, title=item.title, author=item.author),
        source_type=item.source_type,
        source_metadata=parse_source_metadata(item.source_type, item.source_metadata),
        order=item.order,
        token_count=item.token_count or len(item.text.split()),
    )


def _build_document_summaries(chunks: Iterable[DocumentChunk]) -> list[DocumentSummary]:
    counts: defaultdict[str, int] = defaultdict(int)
    first: dict[str, DocumentChunk] = {}
    for chunk in chunks:
        counts[chunk.document.document_id] += 1
        first.setdefault(chunk.document.document_id, chunk)
    return [
        DocumentSummary(
            document_id=doc_id,
            title=first[doc_id].document.title,
            source_type=first[doc_id].source_type,
            chunk_count=count,
        )
        for doc_id, count in counts.items()
    ]


app = create_app()


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":  # pragma: no cover - manual launch
    main()
