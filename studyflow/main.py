"""
FastAPI application for the study material pipeline.

The API only registers work and reports on it: creating units, attaching
files, reading job status and searching sections. Stage execution happens
in the Celery workers (``studyflow.workers``). Serve with
``uvicorn studyflow.main:app``.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from studyflow.api import api_router
from studyflow.core.config import settings
from studyflow.core.errors import (
    ContentUnitNotFoundError,
    ErrorKind,
    JobNotFoundError,
    JobStateError,
    PayloadValidationError,
    StudyFlowError,
)
from studyflow.core.logging import get_logger, setup_logging
from studyflow.db.session import check_db_health, close_db, create_engine, create_session_factory, init_db
from studyflow.services.queue.job_store import JobStore

setup_logging()
logger = get_logger(__name__)

VERSION = "0.1.0"

# Pipeline errors that escape a route: specific classes first, then by kind
ERROR_CLASS_STATUS = (
    (ContentUnitNotFoundError, 404),
    (JobNotFoundError, 404),
    (JobStateError, 409),
    (PayloadValidationError, 422),
)
ERROR_KIND_STATUS = {
    ErrorKind.TRANSIENT_EXTERNAL: 503,
    ErrorKind.PERMANENT_EXTERNAL: 502,
    ErrorKind.CONTENT_QUALITY: 422,
    ErrorKind.EXHAUSTED: 409,
}


def error_status(exc: StudyFlowError) -> int:
    for error_class, status_code in ERROR_CLASS_STATUS:
        if isinstance(exc, error_class):
            return status_code
    return ERROR_KIND_STATUS.get(exc.kind, 500)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Engine and session factory live on ``app.state`` for the process lifetime."""
    logger.info("api_starting", environment=settings.APP_ENV, version=VERSION)

    engine = create_engine()
    app.state.engine = engine
    app.state.session_factory = create_session_factory(engine)
    await init_db(engine)

    yield

    logger.info("api_stopping")
    await close_db(engine)


async def health(request: Request) -> JSONResponse:
    """Database connectivity plus queue depth; 503 while the database is down."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None or not await check_db_health(engine):
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "version": VERSION, "database": "disconnected"},
        )

    stats = await JobStore(request.app.state.session_factory).stats()
    return JSONResponse(
        content={
            "status": "healthy",
            "version": VERSION,
            "database": "connected",
            "queue": {
                "pending": stats["by_status"]["pending"],
                "processing": stats["by_status"]["processing"],
                "oldest_pending_at": stats["oldest_pending_at"],
            },
        }
    )


async def pipeline_error_handler(request: Request, exc: StudyFlowError) -> JSONResponse:
    logger.warning(
        "pipeline_error_in_request",
        path=request.url.path,
        kind=exc.kind.value,
        error=str(exc),
    )
    return JSONResponse(
        status_code=error_status(exc),
        content={"error": {"code": exc.kind.value, "message": str(exc)}},
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        exc_info=True,
    )
    return JSONResponse(
        status_code=500,
        content={"error": {"code": "internal_server_error", "message": "An unexpected error occurred"}},
    )


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        description="Turns uploaded lecture material into segmented study notes and quizzes",
        version=VERSION,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    app.add_api_route("/health", health, methods=["GET"], tags=["health"])
    app.include_router(api_router, prefix=settings.API_V1_PREFIX)

    app.add_exception_handler(StudyFlowError, pipeline_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    return app


app = create_app()
