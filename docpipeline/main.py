"""
FastAPI Application — Entry Point

Document Pipeline API

Routes (all versioned under /api/v1/):
  - /cron/process-jobs          scheduler trigger, one pipeline tick per call
  - /admin/reprocess-metadata   vector metadata repair
  - /admin/batch-status         in-flight batch operations
  - /health, /ready             load balancer health checks (no auth)

Middleware stack (innermost → outermost):
  1. Request ID injection: X-Request-ID header on every response
  2. Request logging: one log line per request with latency

Every 4xx/5xx body is an ErrorResponse envelope.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from docpipeline.api.v1.admin import router as admin_router
from docpipeline.api.v1.cron import router as cron_router
from docpipeline.core.config import settings
from docpipeline.core.errors import DocumentNotFound, DocumentNotReady, ServiceUnavailable
from docpipeline.core.resilience import breaker_states
from docpipeline.db.session import check_db_health
from docpipeline.schemas.pipeline import ErrorDetail, ErrorResponse, PipelineErrors

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


# ---------------------------------------------------------------------------
# Application lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Starting Document Pipeline | env=%s bucket=%s index=%s tick=%ds",
        settings.app_env, settings.s3_bucket, settings.pinecone_index_name,
        settings.tick_interval_seconds,
    )
    if not settings.cron_secret:
        logger.warning("CRON_SECRET is empty; scheduler and admin routes are open")

    yield

    logger.info("Shutting down Document Pipeline")
    from docpipeline.db.session import engine
    await engine.dispose()


def _error(status_code: int, body: ErrorResponse, request: Request) -> JSONResponse:
    request_id = request.headers.get("X-Request-ID")
    if body.request_id is None:
        body.request_id = request_id
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    app = FastAPI(
        title="Document Pipeline",
        description=(
            "Asynchronous PDF extraction, chunking, embedding and vector indexing. "
            "Driven by a scheduler trigger; batch operations are polled across ticks."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
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
            "HTTP %s %s %d %.1fms | request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request_id,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers: uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(DocumentNotFound)
    async def document_not_found_handler(request: Request, exc: DocumentNotFound):
        return _error(status.HTTP_404_NOT_FOUND, PipelineErrors.document_not_found(exc.document_id), request)

    @app.exception_handler(DocumentNotReady)
    async def document_not_ready_handler(request: Request, exc: DocumentNotReady):
        return _error(
            status.HTTP_409_CONFLICT,
            PipelineErrors.document_not_ready(exc.document_id, exc.status),
            request,
        )

    @app.exception_handler(ServiceUnavailable)
    async def service_unavailable_handler(request: Request, exc: ServiceUnavailable):
        response = _error(status.HTTP_503_SERVICE_UNAVAILABLE, PipelineErrors.service_unavailable(str(exc)), request)
        response.headers["Retry-After"] = str(max(1, int(exc.retry_in)))
        return response

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if isinstance(exc.detail, dict) and "error_code" in exc.detail:
            body = ErrorResponse(**exc.detail)
        else:
            body = ErrorResponse(error_code=f"HTTP_{exc.status_code}", message=str(exc.detail))
        return _error(exc.status_code, body, request)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        details = [
            ErrorDetail(
                field=".".join(str(part) for part in err["loc"] if part != "body") or None,
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Invalid pipeline request.",
            details=details,
        )
        return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, body, request)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        # Job-level failures are absorbed by the runner; anything reaching here is a bug.
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        logger.exception("Unhandled error | path=%s request_id=%s", request.url.path, request_id)
        response = _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR, PipelineErrors.internal_error(request_id), request,
        )
        response.headers["X-Request-ID"] = request_id
        return response

    app.include_router(cron_router,  prefix="/api/v1")
    app.include_router(admin_router, prefix="/api/v1")

    # Health checks carry no auth.

    @app.get("/health", tags=["Operations"], summary="Liveness check")
    async def health() -> dict:
        return {"status": "ok", "service": "docpipeline"}

    @app.get("/ready", tags=["Operations"], summary="Database reachability and breaker states")
    async def readiness() -> JSONResponse:
        database = await check_db_health()
        ready = database["status"] == "ok"
        return JSONResponse(
            status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status":   "ready" if ready else "not_ready",
                "database": database,
                "breakers": breaker_states(),
            },
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("docpipeline.main:app", host="0.0.0.0", port=8000, reload=not settings.is_production)
