"""FastAPI application entry point."""
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic_settings import BaseSettings, SettingsConfigDict
from starlette.responses import Response

from kb_engine.api.routes import ask, documents, metrics, search
from kb_engine.services.answer_service import AnswerService
from kb_engine.services.chunker import Chunker
from kb_engine.services.document_repository import DocumentRepository
from kb_engine.services.embedding_service import EmbeddingService, create_embedding_service
from kb_engine.services.ingestion_service import IngestionService
from kb_engine.services.layout_parser import LayoutParser
from kb_engine.services.llm_service import LLMService
from kb_engine.services.passage_store import PassageStore
from kb_engine.services.rerank_service import RerankService
from kb_engine.services.retrieval_cache import RetrievalCache
from kb_engine.services.retrieval_engine import RetrievalEngine
from kb_engine.services.tenant_settings import TenantRagSettings, TenantSettingsProvider
from kb_engine.services.text_extractor import TextExtractor
from kb_engine.utils.logger import logger
from kb_engine.utils.tracer import initialize_tracing, shutdown_tracing


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        # Look for .env in both backend/ and parent directory
        env_file=(
            os.path.join(os.path.dirname(__file__), "..", "..", ".env"),
            os.path.join(os.path.dirname(__file__), "..", ".env"),
        ),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # OpenAI-compatible API used for embeddings, rerank and answers
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"

    # Embeddings
    embedding_provider: str = "openai"  # "openai" or "local"
    embedding_model: str = "text-embedding-3-small"
    local_embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    embedding_batch_size: int = 64
    embedding_timeout_seconds: float = 15.0

    # Storage
    qdrant_db_path: str = "./qdrant_db"
    qdrant_url: str = ""  # Remote Qdrant (empty = local path)
    qdrant_api_key: str = ""
    qdrant_collection: str = "kb_passages"
    qdrant_batch_size: int = 100
    database_url: str = "sqlite:///./kb_documents.db"

    # Ingestion
    max_file_size_mb: int = 20
    chunk_target_tokens: int = 1000
    chunk_overlap_tokens: int = 120

    # Retrieval
    retrieval_top_k: int = 8
    retrieval_overfetch: int = 50
    retrieval_timeout_ms: int = 5000
    retrieval_cache_ttl_seconds: float = 180.0
    retrieval_cache_max_entries: int = 10000
    hybrid_enabled: bool = True
    rerank_enabled: bool = False  # Enable rerank for every tenant
    rerank_model: str = "gpt-4o-mini"
    rerank_trigger: float = 0.6
    rerank_timeout_seconds: float = 8.0
    tenant_settings_path: str = ""  # JSON file of per-tenant overrides

    # Answering
    chat_model: str = "gpt-4o-mini"
    chat_temperature: float = 0.2
    allow_keyword_top1: bool = True

    # OpenTelemetry tracing configuration
    tracing_enabled: bool = True
    otlp_endpoint: str = ""  # OTLP endpoint URL (empty = use console exporter)


# Global services (initialized in lifespan)
settings: Optional[Settings] = None
retrieval_cache: Optional[RetrievalCache] = None
settings_provider: Optional[TenantSettingsProvider] = None
embedding_service: Optional[EmbeddingService] = None
passage_store: Optional[PassageStore] = None
document_repository: Optional[DocumentRepository] = None
rerank_service: Optional[RerankService] = None
llm_service: Optional[LLMService] = None
ingestion_service: Optional[IngestionService] = None
retrieval_engine: Optional[RetrievalEngine] = None
answer_service: Optional[AnswerService] = None
tracer_provider = None


def default_tenant_settings(app_settings: Settings) -> TenantRagSettings:
    """Tenant defaults derived from application settings."""
    return TenantRagSettings(
        chat_model=app_settings.chat_model,
        temperature=app_settings.chat_temperature,
        embedding_model=app_settings.embedding_model,
        overfetch=app_settings.retrieval_overfetch,
        hybrid_enabled=app_settings.hybrid_enabled,
        rerank_trigger=app_settings.rerank_trigger,
        retrieval_timeout_ms=app_settings.retrieval_timeout_ms,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown."""
    global settings, retrieval_cache, settings_provider, embedding_service, passage_store
    global document_repository, rerank_service, llm_service, ingestion_service, retrieval_engine
    global answer_service, tracer_provider

    # Startup
    logger.info("Starting knowledge base engine")
    settings = Settings()

    # Initialize tracing before services so the OpenAI SDK is instrumented
    tracer_provider = initialize_tracing(
        service_name="kb-engine",
        service_version="1.0.0",
        otlp_endpoint=settings.otlp_endpoint if settings.otlp_endpoint else None,
        tracing_enabled=settings.tracing_enabled,
    )

    retrieval_cache = RetrievalCache(
        ttl_seconds=settings.retrieval_cache_ttl_seconds,
        max_entries=settings.retrieval_cache_max_entries,
    )
    settings_provider = TenantSettingsProvider(
        defaults=default_tenant_settings(settings),
        cache=retrieval_cache,
        overrides_path=settings.tenant_settings_path or None,
    )

    embedding_model = (
        settings.local_embedding_model if settings.embedding_provider == "local" else settings.embedding_model
    )
    embedding_service = create_embedding_service(
        provider=settings.embedding_provider,
        model_name=embedding_model,
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
        batch_size=settings.embedding_batch_size,
        timeout_seconds=settings.embedding_timeout_seconds,
    )
    passage_store = PassageStore(
        db_path=settings.qdrant_db_path,
        url=settings.qdrant_url or None,
        api_key=settings.qdrant_api_key or None,
        collection_name=settings.qdrant_collection,
        batch_size=settings.qdrant_batch_size,
    )
    document_repository = DocumentRepository(settings.database_url)

    if settings.openai_api_key:
        rerank_service = RerankService(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            model=settings.rerank_model,
            timeout_seconds=settings.rerank_timeout_seconds,
        )
    else:
        logger.warning("No API key configured; rerank requests will keep the fused order")
    llm_service = LLMService(api_key=settings.openai_api_key or None, base_url=settings.openai_base_url)

    ingestion_service = IngestionService(
        text_extractor=TextExtractor(LayoutParser()),
        chunker=Chunker(settings.chunk_target_tokens, settings.chunk_overlap_tokens),
        embedding_service=embedding_service,
        passage_store=passage_store,
        repository=document_repository,
        settings_provider=settings_provider,
        cache=retrieval_cache,
        max_file_size_mb=settings.max_file_size_mb,
    )
    retrieval_engine = RetrievalEngine(
        embedding_service=embedding_service,
        passage_store=passage_store,
        cache=retrieval_cache,
        settings_provider=settings_provider,
        rerank_service=rerank_service,
        rerank_enabled=settings.rerank_enabled,
        rerank_timeout_seconds=settings.rerank_timeout_seconds,
        default_k=settings.retrieval_top_k,
    )
    answer_service = AnswerService(
        retrieval_engine=retrieval_engine,
        llm_service=llm_service,
        settings_provider=settings_provider,
        repository=document_repository,
        allow_keyword_top1=settings.allow_keyword_top1,
    )

    logger.info("All services initialized successfully")

    yield

    # Shutdown
    logger.info("Shutting down knowledge base engine")
    if embedding_service:
        await embedding_service.close()
    if rerank_service:
        await rerank_service.close()
    if llm_service:
        await llm_service.close()
    if passage_store:
        passage_store.close()
    if document_repository:
        document_repository.close()
    if retrieval_cache:
        retrieval_cache.clear()
    if tracer_provider:
        shutdown_tracing(tracer_provider)


# Create FastAPI app
app = FastAPI(
    title="Knowledge Base Engine",
    description="Multi-tenant document ingestion and hybrid retrieval",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Handle validation errors with better error messages.

    Specifically handles JSON decode errors from invalid control characters.
    """
    errors = exc.errors()

    for error in errors:
        if error.get("type") == "json_invalid":
            ctx = error.get("ctx", {})
            if "Invalid control character" in str(ctx.get("error", "")):
                return JSONResponse(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    content={
                        "detail": "Invalid JSON: Control characters detected in request body.",
                        "error": "json_parse_error",
                    },
                )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": jsonable_errors(errors)},
    )


def jsonable_errors(errors):
    # Pydantic puts the raised exception object in ctx, which is not JSON serializable
    cleaned = []
    for error in errors:
        error = dict(error)
        if "ctx" in error:
            error["ctx"] = {key: str(value) for key, value in error["ctx"].items()}
        cleaned.append(error)
    return cleaned


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "Knowledge Base Engine"}


# Prometheus metrics endpoint
@app.get("/metrics")
async def prometheus_metrics():
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Include routers
app.include_router(documents.router, prefix="/api", tags=["documents"])
app.include_router(search.router, prefix="/api", tags=["search"])
app.include_router(ask.router, prefix="/api", tags=["ask"])
app.include_router(metrics.router, prefix="/api", tags=["metrics"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.api_host if settings else "0.0.0.0", port=settings.api_port if settings else 8000)
