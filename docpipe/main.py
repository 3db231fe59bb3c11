"""
FastAPI Application — Entry Point

Document ingestion service: upload → parse → chunk → embed → store, with a
live Server-Sent Events progress stream per document.

Architecture:
  - All routes are versioned under /api/v1/
  - Long-lived components are built once in create_app() and kept on
    app.state: ProgressStore, ProgressTracker, DocumentRepository,
    Embedder, DocumentProcessor, BackgroundTaskRunner, IngestionService
  - Processing runs are asyncio tasks owned by the BackgroundTaskRunner;
    they are drained on shutdown
  - Structured JSON error responses on all 4xx/5xx

Middleware stack (innermost → outermost):
  1. Gzip: compress responses > 1 KB
  2. CORS: restrict to configured origins
  3. Request ID injection + request logging with latency
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from docpipe.api.v1.documents import router as documents_router
from docpipe.core.config import Settings, get_settings
from docpipe.core.errors import (
    DocumentNotFoundError,
    EmbeddingError,
    PipelineError,
    StorageError,
    ValidationError,
)
from docpipe.db.repository import DocumentRepository
from docpipe.db.session import AsyncSessionLocal, check_db_health, create_tables, engine
from docpipe.processing.chunking import DocumentChunker
from docpipe.processing.embeddings import Embedder
from docpipe.progress import ProgressStore, ProgressTracker
from docpipe.schemas.documents import ErrorDetail, ErrorResponse, UploadErrors
from docpipe.services.ingestion import BackgroundTaskRunner, IngestionService
from docpipe.services.processor import DocumentProcessor

settings = get_settings()

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

_PIPELINE_ERROR_STATUS: dict[type, int] = {
    ValidationError:       status.HTTP_400_BAD_REQUEST,
    DocumentNotFoundError: status.HTTP_404_NOT_FOUND,
    EmbeddingError:        status.HTTP_502_BAD_GATEWAY,
    StorageError:          status.HTTP_503_SERVICE_UNAVAILABLE,
}


# ---------------------------------------------------------------------------
# Application lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Run on startup: validate DB connectivity, optionally create tables.
    Run on shutdown: drain processing tasks, clean up connection pools.
    """
    cfg: Settings = app.state.settings
    logger.info(
        "Starting docpipe | env=%s embedding=%s/%s chunk=%d/%d",
        cfg.app_env, cfg.embedding_provider, cfg.embedding_dimensions,
        cfg.chunk_size, cfg.chunk_overlap,
    )

    db_health = await check_db_health()
    if db_health["status"] != "ok":
        logger.critical("Database health check failed at startup: %s", db_health)
        raise RuntimeError(f"DB unavailable: {db_health}")
    logger.info("Database: connected")

    if cfg.db_create_tables:
        await create_tables()

    yield

    logger.info("Shutting down docpipe")
    await app.state.runner.shutdown()
    app.state.store.close()
    await engine.dispose()


# ---------------------------------------------------------------------------
# Component wiring
# ---------------------------------------------------------------------------

def build_components(app: FastAPI, cfg: Settings, embedder: Optional[Embedder] = None) -> None:
    """Construct the pipeline once and attach it to app.state."""
    store      = ProgressStore(retention_seconds=cfg.progress_retention_seconds)
    tracker    = ProgressTracker(store, close_delay=cfg.stream_close_delay)
    repository = DocumentRepository(AsyncSessionLocal)
    embedder   = embedder or Embedder.from_settings(cfg)
    runner     = BackgroundTaskRunner()

    processor = DocumentProcessor(
        tracker=tracker,
        repository=repository,
        embedder=embedder,
        chunker=DocumentChunker(cfg.chunk_size, cfg.chunk_overlap),
        timeout_seconds=cfg.processing_timeout_seconds,
    )

    app.state.settings   = cfg
    app.state.store      = store
    app.state.tracker    = tracker
    app.state.repository = repository
    app.state.embedder   = embedder
    app.state.runner     = runner
    app.state.processor  = processor
    app.state.ingestion  = IngestionService(
        tracker=tracker,
        processor=processor,
        runner=runner,
        max_file_size_bytes=cfg.max_file_size_bytes,
    )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(cfg: Optional[Settings] = None) -> FastAPI:
    cfg = cfg or settings

    app = FastAPI(
        title="docpipe — Document Ingestion Pipeline",
        description=(
            "Turns uploaded text, Markdown and JSON documents into vector-indexed "
            "chunks, with live progress over Server-Sent Events."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not cfg.is_production else None,
        redoc_url="/api/redoc" if not cfg.is_production else None,
        openapi_url="/api/openapi.json" if not cfg.is_production else None,
        lifespan=lifespan,
    )

    build_components(app, cfg)

    # ----------------------------------------------------------------
    # Middleware (applied in reverse order: last added = outermost)
    # ----------------------------------------------------------------

    app.add_middleware(GZipMiddleware, minimum_size=1024)

    allowed_origins = ["*"] if cfg.app_env == "development" else []
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type", "X-Request-ID", "X-User-ID"],
        expose_headers=["X-Request-ID", "X-Document-ID", "Location"],
    )

    # ----------------------------------------------------------------
    # Request ID + structured logging middleware
    # ----------------------------------------------------------------

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "HTTP %s %s %d %.1fms | owner=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request.headers.get("X-User-ID", "-"),
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers: uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Convert Pydantic/FastAPI validation errors to structured ErrorResponse."""
        details = [
            ErrorDetail(
                field=" → ".join(str(loc) for loc in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=details,
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(PipelineError)
    async def pipeline_exception_handler(request: Request, exc: PipelineError):
        """Pipeline errors that surface in a request (storage, query embedding, ...)."""
        status_code = next(
            (code for cls, code in _PIPELINE_ERROR_STATUS.items() if isinstance(exc, cls)),
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
        logger.warning(
            "Pipeline error | path=%s code=%s error=%s",
            request.url.path, exc.code, exc.message,
        )
        if isinstance(exc, StorageError):
            body = UploadErrors.storage_error(exc.message)
        elif isinstance(exc, EmbeddingError):
            body = UploadErrors.embedding_error(exc.message)
        else:
            body = ErrorResponse(error_code=exc.code, message=exc.message)
        body.request_id = request.headers.get("X-Request-ID")
        return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions — never expose stack traces."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        body = UploadErrors.internal_error(request_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(documents_router, prefix="/api/v1")

    # ----------------------------------------------------------------
    # Health & readiness endpoints (used by load balancer)
    # ----------------------------------------------------------------

    @app.get(
        "/health",
        tags=["Operations"],
        summary="Liveness probe",
        description="Returns 200 if the process is alive. No external checks.",
    )
    async def health() -> dict:
        return {
            "status":          "ok",
            "service":         "docpipe",
            "tracked":         app.state.store.size,
            "active_runs":     app.state.runner.active,
        }

    @app.get(
        "/ready",
        tags=["Operations"],
        summary="Readiness probe",
        description="Returns 200 only if the database is reachable.",
    )
    async def readiness() -> JSONResponse:
        db_status = await check_db_health()
        if db_status["status"] != "ok":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": db_status},
            )
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ready", "database": db_status},
        )

    return app


# ---------------------------------------------------------------------------
# Application instance (imported by uvicorn)
# ---------------------------------------------------------------------------

app = create_app()


# ---------------------------------------------------------------------------
# Local development entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "docpipe.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
