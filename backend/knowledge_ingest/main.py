"""
FastAPI Application — Entry Point

Knowledge-base document ingestion API.

  - Routes are versioned under /api/v1/
  - The processing orchestrator (and its job queue) is built once in the
    lifespan and shared through app.state
  - Domain errors map to structured ErrorResponse bodies:
        DocumentNotFoundError → 404   DocumentStateError → 409
        ContentError          → 422   anything else      → 500
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from knowledge_ingest.api.v1.documents import router as documents_router
from knowledge_ingest.core.config import get_settings
from knowledge_ingest.core.errors import ContentError, DocumentNotFoundError, DocumentStateError
from knowledge_ingest.db.session import check_db_health, get_engine, get_session_factory
from knowledge_ingest.schemas.documents import ApiErrors, ErrorDetail
from knowledge_ingest.services.orchestrator import DocumentProcessingOrchestrator, build_orchestrator

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Application lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info(
        "Starting knowledge ingestion | env=%s celery=%s redis=%s",
        settings.app_env, bool(settings.celery_broker_url), bool(settings.redis_url),
    )

    if getattr(app.state, "orchestrator", None) is None:
        app.state.orchestrator = build_orchestrator(settings, get_session_factory())
    orchestrator: DocumentProcessingOrchestrator = app.state.orchestrator

    yield

    logger.info("Shutting down knowledge ingestion")
    await orchestrator.close()
    await get_engine().dispose()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(orchestrator: DocumentProcessingOrchestrator | None = None) -> FastAPI:
    settings = get_settings()
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    app = FastAPI(
        title="Knowledge Base Ingestion",
        description="Document extraction, chunking, embedding and processing-status tracking.",
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url=None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )
    # Pre-built orchestrator (tests, embedding in another app) skips lifespan wiring
    app.state.orchestrator = orchestrator

    app.add_middleware(GZipMiddleware, minimum_size=1024)

    # ----------------------------------------------------------------
    # Request ID + structured logging middleware
    # ----------------------------------------------------------------

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start = time.perf_counter()

        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        logger.info(
            "HTTP %s %s %d %.1fms",
            request.method, request.url.path, response.status_code,
            (time.perf_counter() - start) * 1000,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers: uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        details = [
            ErrorDetail(
                field=" → ".join(str(loc) for loc in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        body = ApiErrors.validation(details)
        body.request_id = request.headers.get("X-Request-ID")
        return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=body.model_dump(mode="json"))

    @app.exception_handler(DocumentNotFoundError)
    async def not_found_handler(request: Request, exc: DocumentNotFoundError):
        body = ApiErrors.document_not_found(exc.document_id)
        body.message = str(exc)
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=body.model_dump(mode="json"))

    @app.exception_handler(DocumentStateError)
    async def state_error_handler(request: Request, exc: DocumentStateError):
        body = ApiErrors.invalid_state(str(exc))
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=body.model_dump(mode="json"))

    @app.exception_handler(ContentError)
    async def content_error_handler(request: Request, exc: ContentError):
        body = ApiErrors.unprocessable(str(exc))
        return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=body.model_dump(mode="json"))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions — never expose stack traces."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        logger.exception("Unhandled exception | path=%s request_id=%s", request.url.path, request_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ApiErrors.internal_error(request_id).model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(documents_router, prefix="/api/v1")

    # ----------------------------------------------------------------
    # Health & readiness endpoints
    # ----------------------------------------------------------------

    @app.get("/health", tags=["Operations"], summary="Liveness probe")
    async def health() -> dict:
        return {"status": "ok", "service": "knowledge-ingest"}

    @app.get("/ready", tags=["Operations"], summary="Readiness probe")
    async def readiness() -> JSONResponse:
        db_status = await check_db_health()
        queue = await app.state.orchestrator.get_queue_stats() if app.state.orchestrator else None
        if db_status["status"] != "ok":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": db_status},
            )
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ready", "database": db_status, "queue": queue},
        )

    return app


# ---------------------------------------------------------------------------
# Local development entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "knowledge_ingest.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        reload=get_settings().app_env == "development",
        log_level="debug" if get_settings().debug else "info",
    )
