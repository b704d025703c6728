"""FastAPI application entry-point for the GST invoice sync service."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sync_core.errors import SyncError
from sync_core.state.sqlite_adapter import create_local_tables

from sync_api import __version__
from sync_api.config import PlatformEnv, SyncSettings, load_sync_settings
from sync_api.dependencies import dispose_engine, get_settings, init_engine
from sync_api.middleware.auth import AuthenticationMiddleware
from sync_api.middleware.json_formatter import JSONFormatter
from sync_api.middleware.logging import RequestLoggingMiddleware
from sync_api.routers import health, invoices, sync, usage
from sync_api.services.event_bus import init_event_bus

logger = logging.getLogger(__name__)


def _configure_structured_logging() -> None:
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Switch to JSON log lines when structured logging is enabled.
    - Initialise the async database engine.
    - Create database tables if they do not exist (dev and local SQLite
      convenience; production should use migrations).
    - Initialise the event bus.

    On shutdown:
    - Dispose the database engine connection pool.
    """
    settings: SyncSettings = app.state.settings

    if settings.structured_logging:
        _configure_structured_logging()
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    logger.info(
        "Database engine initialised (%s, %s)",
        settings.database_url.split("://", 1)[0],
        "local" if settings.is_sqlite else "postgres",
    )

    if settings.platform_env == PlatformEnv.DEV or settings.is_sqlite:
        await create_local_tables(engine)
        logger.info(
            "Database tables ensured (%s)",
            "local SQLite" if settings.is_sqlite else "dev auto-migration",
        )

    init_event_bus()

    yield

    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(settings: SyncSettings | None = None) -> FastAPI:
    """Construct and configure the FastAPI application.

    When *settings* is given it replaces the environment-derived settings
    for both startup and request handling.
    """
    if settings is None:
        settings = load_sync_settings()

    app = FastAPI(
        title="GST Sync API",
        description="Offline-first sync backend for GST invoicing clients.",
        version=__version__,
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.settings = settings
    app.dependency_overrides[get_settings] = lambda: settings

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "X-Correlation-ID",
            "Accept",
        ],
    )
    app.add_middleware(AuthenticationMiddleware, secret=settings.auth_secret.get_secret_value())
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(sync.router, prefix="/api/v1")
    app.include_router(invoices.router, prefix="/api/v1")
    app.include_router(usage.router, prefix="/api/v1")

    # Infrastructure endpoints outside versioning.
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(SyncError)
    async def sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
        logger.info("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal database error"},
        )

    return app


# Module-level application instance used by ``uvicorn sync_api.main:app``.
app = create_app()
