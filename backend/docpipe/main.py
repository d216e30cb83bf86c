"""
Document pipeline HTTP service

Ingestion surface of the document import pipeline. Extraction, matching and
persistence all happen in the Celery workers; this process only stores files
and queues jobs.

  - Routes live under /api/v1/
  - The queue broker is created once in the lifespan hook and shared through
    app.state; a broker that is unreachable at start-up yields no-op queues
    (uploads still succeed with queued=false)
  - Every 4xx/5xx body is an ErrorResponse envelope

Middleware, innermost first: request id + access log, CORS, gzip.
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
from sqlalchemy.ext.asyncio import async_sessionmaker

from docpipe.api.v1.bulk_tests import router as bulk_tests_router
from docpipe.api.v1.files import router as files_router
from docpipe.api.v1.queues import router as queues_router
from docpipe.core.config import settings
from docpipe.db.session import AsyncSessionLocal, check_db_health
from docpipe.ingestion import BulkTestStore
from docpipe.queue.broker import QueueBroker, set_broker
from docpipe.schemas.files import ApiErrors, ErrorDetail, ErrorResponse
from docpipe.storage.files import FileStore

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


# ---------------------------------------------------------------------------
# Application lifespan — startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: check the database, connect the broker (unless one was injected).
    Shutdown: drain broker connections, dispose of the engine.
    """
    logger.info("Starting document pipeline API | env=%s", settings.app_env)

    db_health = await check_db_health()
    if db_health["status"] != "ok":
        logger.critical("Database health check failed at startup: %s", db_health)
        raise RuntimeError(f"DB unavailable: {db_health}")
    if not settings.is_production:
        from docpipe.db.session import create_all
        await create_all()

    if getattr(app.state, "broker", None) is None:
        from docpipe.workers.celery_app import celery_app
        app.state.broker = QueueBroker.connect(celery_app)
    set_broker(app.state.broker)
    logger.info("Queue broker ready | degraded=%s", app.state.broker.degraded)

    yield

    logger.info("Shutting down document pipeline API")
    await app.state.broker.close()
    set_broker(None)
    from docpipe.db.session import engine
    await engine.dispose()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(
    *,
    broker:          Optional[QueueBroker] = None,
    session_factory: Optional[async_sessionmaker] = None,
    file_store:      Optional[FileStore] = None,
    bulk_store:      Optional[BulkTestStore] = None,
) -> FastAPI:
    app = FastAPI(
        title="Document Import Pipeline",
        description=(
            "Accepts spreadsheet and PDF files, queues them for field extraction, "
            "entity matching and persistence, and reports pipeline progress."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    app.state.broker = broker
    app.state.session_factory = session_factory or AsyncSessionLocal
    app.state.file_store = file_store or FileStore()
    app.state.bulk_store = bulk_store or BulkTestStore()

    # ----------------------------------------------------------------
    # Middleware (applied in reverse order — last added = outermost)
    # ----------------------------------------------------------------

    app.add_middleware(GZipMiddleware, minimum_size=1024)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else [],
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Location"],
    )

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "HTTP %s %s %d %.1fms",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers — uniform structured error responses
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

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        """Stack traces go to the log only."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        logger.exception("Unhandled error | method=%s path=%s request_id=%s",
                         request.method, request.url.path, request_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ApiErrors.internal_error(request_id).model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(files_router,      prefix="/api/v1")
    app.include_router(queues_router,     prefix="/api/v1")
    app.include_router(bulk_tests_router, prefix="/api/v1")

    # ----------------------------------------------------------------
    # Health endpoints (used by the load balancer)
    # ----------------------------------------------------------------

    @app.get("/health", tags=["Operations"], summary="Liveness and dependency status")
    async def health() -> JSONResponse:
        db_status = await check_db_health()
        broker_state = app.state.broker
        body = {
            "status": "ok" if db_status["status"] == "ok" else "degraded",
            "service": "docpipe-api",
            "database": db_status,
            "broker": "unavailable" if broker_state is None or broker_state.degraded else "ok",
        }
        code = status.HTTP_200_OK if db_status["status"] == "ok" else status.HTTP_503_SERVICE_UNAVAILABLE
        return JSONResponse(status_code=code, content=body)

    return app


# ---------------------------------------------------------------------------
# Application instance (imported by uvicorn)
# ---------------------------------------------------------------------------

app = create_app()
