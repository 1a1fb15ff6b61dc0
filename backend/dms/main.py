"""
FastAPI Application — Entry Point

Document management API. Uploads land in the object store and the database;
PDFs are handed to the OCR worker through ocr-queue. OCR text and summaries
appear on the document once the workers have processed it.

  - Routes are versioned under /api/v1/
  - DmsError → HTTP status through dms.core.errors.ERROR_STATUS (one table)
  - Structured JSON error responses on all 4xx/5xx

Run:  uvicorn dms.main:app
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from kombu import Connection

from dms.api.v1.documents import router as documents_router
from dms.core.config import settings
from dms.core.errors import DmsError, status_for
from dms.core.logging import configure_logging
from dms.db.session import check_db_health, get_engine
from dms.messaging.publisher import OcrJobPublisher
from dms.messaging.topology import build_topology
from dms.schemas.documents import ErrorDetail, ErrorResponse
from dms.storage.s3 import ObjectStore

logger = logging.getLogger(__name__)

configure_logging(settings.debug)


# ---------------------------------------------------------------------------
# Application lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: verify DB connectivity, create the object store client and the
    job publisher (owns the broker connection).
    Shutdown: release the broker connection and the DB pool.
    """
    logger.info(
        "Starting DMS API | env=%s bucket=%s queue=%s",
        settings.app_env, settings.s3_bucket, settings.ocr_queue,
    )

    db_health = await check_db_health()
    if db_health["status"] != "ok":
        logger.critical("Database health check failed at startup: %s", db_health)
        raise RuntimeError(f"DB unavailable: {db_health}")

    app.state.storage = ObjectStore(settings)
    app.state.publisher = OcrJobPublisher(
        Connection(settings.broker_url, heartbeat=30),
        build_topology(settings),
    )

    yield

    logger.info("Shutting down DMS API")
    app.state.publisher.close()
    await get_engine().dispose()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    app = FastAPI(
        title="Document Management API",
        description="Upload, tag and search documents; PDFs are OCR'd and summarised asynchronously.",
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url=None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    # ----------------------------------------------------------------
    # Request ID + logging middleware
    # ----------------------------------------------------------------

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "HTTP %s %s %d %.1fms",
            request.method, request.url.path, response.status_code, duration_ms,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers: uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(DmsError)
    async def dms_error_handler(request: Request, exc: DmsError):
        code = status_for(exc.kind)
        if code >= 500:
            logger.error("Request failed | path=%s kind=%s error=%s", request.url.path, exc.kind.value, exc.message)
        details = (
            [ErrorDetail(field=exc.field, message=exc.message, code=exc.error_code)]
            if exc.field else []
        )
        body = ErrorResponse(
            error_code=exc.error_code,
            message=exc.message,
            details=details,
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(status_code=code, content=body.model_dump(mode="json"))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        details = [
            ErrorDetail(
                field=".".join(str(loc) for loc in err["loc"]),
                message=err["msg"],
                code="VALIDATION",
            )
            for err in exc.errors()
        ]
        body = ErrorResponse(
            error_code="VALIDATION",
            message="Request validation failed.",
            details=details,
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions — never expose stack traces."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        logger.exception("Unhandled exception | path=%s request_id=%s", request.url.path, request_id)
        body = ErrorResponse(
            error_code="INTERNAL",
            message="An unexpected error occurred.",
            request_id=request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(documents_router, prefix="/api/v1")

    @app.get("/health", tags=["Operations"], summary="Liveness probe")
    async def health() -> dict:
        return {"status": "ok", "service": "dms-api"}

    @app.get("/ready", tags=["Operations"], summary="Readiness probe")
    async def readiness() -> JSONResponse:
        db_status = await check_db_health()
        if db_status["status"] != "ok":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": db_status},
            )
        return JSONResponse(status_code=status.HTTP_200_OK, content={"status": "ready", "database": db_status})

    return app


app = create_app()
