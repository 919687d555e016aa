"""FastAPI application entry point."""

from __future__ import annotations

import json
import logging
import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

from backend.api.consumed import router as consumed_router
from backend.api.events import router as events_router
from backend.api.health import router as health_router
from backend.api.sync import router as sync_router
from backend.config import Settings
from backend.database import LocalDatabase
from backend.exceptions import (
    InternalServerError,
    NetworkError,
    RateLimitedError,
    RefreshFailed,
    RemoteRejected,
    SyncConflictError,
    Unauthenticated,
)
from backend.messaging.broadcaster import create_broadcaster
from backend.services.scheduler_service import SyncScheduler
from backend.services.sync_service import build_sync_engine

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool, use_stdio: bool = False) -> None:
    """Configure application logging.

    In stdio mode stdout carries notification messages, so logs go to stderr.
    """
    level = logging.DEBUG if debug else logging.INFO
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        stream=sys.stderr if use_stdio else sys.stdout,
        force=True,
    )
    # Quiet noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if debug else logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan: startup and shutdown."""
    settings: Settings = app.state.settings
    settings.validate_runtime()
    _configure_logging(settings.debug, settings.use_stdio_broadcaster)
    logger.info("Starting Nutrack (debug=%s)", settings.debug)

    database = LocalDatabase(settings)
    try:
        await database.create_schema()
    except Exception as exc:
        logger.critical(
            "Failed to initialize database at %s: %s. Check database path and permissions.",
            database.path(),
            exc,
        )
        raise
    app.state.database = database

    broadcaster = create_broadcaster(settings.use_stdio_broadcaster)
    app.state.broadcaster = broadcaster

    try:
        sync_engine = build_sync_engine(settings, database, broadcaster)
    except Exception as exc:
        logger.critical("Failed to initialize sync state under %s: %s.", settings.data_dir, exc)
        raise
    app.state.sync_engine = sync_engine

    scheduler = SyncScheduler.from_settings(
        settings, sync_engine, database.session_factory, broadcaster
    )
    app.state.scheduler = scheduler
    scheduler.start()

    yield

    try:
        await scheduler.stop()
    except Exception as exc:
        logger.error("Error during sync scheduler shutdown: %s", exc, exc_info=True)

    try:
        await database.dispose()
    except Exception as exc:
        logger.error("Error during engine disposal: %s", exc, exc_info=True)

    logger.info("Nutrack stopped")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if settings is None:
        settings = Settings()

    app = FastAPI(
        title="Nutrack",
        description="Nutrition tracker backend with Dropbox database sync",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
    )
    app.state.settings = settings

    app.add_middleware(GZipMiddleware, minimum_size=500)

    cors_origins = (
        settings.cors_origins
        if settings.cors_origins
        else (["http://localhost:3000", "http://localhost:5173"] if settings.debug else [])
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router)
    app.include_router(sync_router)
    app.include_router(events_router)
    app.include_router(consumed_router)

    # Global exception handlers: sync taxonomy first, then safety nets

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = []
        for err in exc.errors():
            loc = err.get("loc", ())
            field = str(loc[-1]) if loc else "unknown"
            errors.append({"field": field, "message": err.get("msg", "Invalid value")})
        logger.warning(
            "RequestValidationError in %s %s: %s",
            request.method,
            request.url.path,
            errors,
        )
        return JSONResponse(status_code=422, content={"detail": errors})

    @app.exception_handler(Unauthenticated)
    async def unauthenticated_handler(request: Request, exc: Unauthenticated) -> JSONResponse:
        logger.info("Unauthenticated in %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=401, content={"detail": "Not logged in to Dropbox"})

    @app.exception_handler(RefreshFailed)
    async def refresh_failed_handler(request: Request, exc: RefreshFailed) -> JSONResponse:
        logger.warning("RefreshFailed in %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=401,
            content={"detail": "Dropbox session expired, please log in again"},
        )

    @app.exception_handler(SyncConflictError)
    async def conflict_handler(request: Request, exc: SyncConflictError) -> JSONResponse:
        logger.warning("SyncConflictError in %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=409, content={"detail": "conflict"})

    @app.exception_handler(RemoteRejected)
    async def remote_rejected_handler(request: Request, exc: RemoteRejected) -> JSONResponse:
        logger.error(
            "RemoteRejected in %s %s (HTTP %d): %s",
            request.method,
            request.url.path,
            exc.status_code,
            exc,
        )
        return JSONResponse(status_code=502, content={"detail": "Dropbox rejected the request"})

    @app.exception_handler(NetworkError)
    async def network_error_handler(request: Request, exc: NetworkError) -> JSONResponse:
        logger.warning("NetworkError in %s %s: %s", request.method, request.url.path, exc)
        headers = None
        if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
            headers = {"Retry-After": str(int(exc.retry_after))}
        return JSONResponse(
            status_code=503,
            content={"detail": "Dropbox is unreachable, try again later"},
            headers=headers,
        )

    @app.exception_handler(OSError)
    async def os_error_handler(request: Request, exc: OSError) -> JSONResponse:
        if isinstance(exc, (ConnectionError, TimeoutError)):
            raise exc
        logger.error("OSError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"detail": "Storage operation failed"},
        )

    @app.exception_handler(json.JSONDecodeError)
    async def json_error_handler(request: Request, exc: json.JSONDecodeError) -> JSONResponse:
        logger.error(
            "JSONDecodeError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Data integrity error"},
        )

    @app.exception_handler(InternalServerError)
    async def internal_server_error_handler(
        request: Request, exc: InternalServerError
    ) -> JSONResponse:
        logger.error(
            "InternalServerError in %s %s: %s",
            request.method,
            request.url.path,
            exc,
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.error("ValueError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        message = str(exc) or "Invalid value"
        return JSONResponse(
            status_code=422,
            content={"detail": message},
        )

    @app.exception_handler(OperationalError)
    async def operational_error_handler(request: Request, exc: OperationalError) -> JSONResponse:
        logger.error(
            "OperationalError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc
        )
        return JSONResponse(
            status_code=503,
            content={"detail": "Database temporarily unavailable"},
        )

    return app


app = create_app()


def cli_entry() -> None:
    """CLI entry point for running the server."""
    import uvicorn

    settings: Settings = app.state.settings
    uvicorn.run(
        "backend.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
