"""FastAPI application entry-point for the metered LLM gateway."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from meter_core.errors import (
    AccountNotFound,
    InsufficientBalance,
    InvalidRequest,
    MeterError,
    SignatureInvalid,
    StorageError,
    Unauthenticated,
    UpstreamProtocolError,
    UpstreamTransportError,
)
from sqlalchemy.exc import SQLAlchemyError

from meter_api import __version__
from meter_api.config import APISettings, PlatformEnv, load_api_settings
from meter_api.dependencies import (
    dispose_engine,
    dispose_identity_provider,
    dispose_upstream_client,
    init_engine,
    init_identity_provider,
    init_upstream_client,
)
from meter_api.middleware.logging import RequestLoggingMiddleware
from meter_api.middleware.prometheus import PrometheusMiddleware
from meter_api.routers import billing, health, proxy, usage
from meter_api.routers import metrics as metrics_router

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

# (status code, client-facing message).  ``None`` means use ``str(exc)``.
_ERROR_RESPONSES: tuple[tuple[type[MeterError], int, str | None], ...] = (
    (Unauthenticated, 401, None),
    (AccountNotFound, 402, "Insufficient tokens"),
    (InsufficientBalance, 402, "Insufficient tokens"),
    (InvalidRequest, 400, None),
    (SignatureInvalid, 400, None),
    (UpstreamTransportError, 500, "Upstream request failed"),
    (UpstreamProtocolError, 500, "Upstream request failed"),
    (StorageError, 500, "Internal storage error"),
)


def error_response(exc: MeterError) -> JSONResponse:
    """Map a domain error to its ``{"error": ...}`` response."""
    for error_type, status_code, message in _ERROR_RESPONSES:
        if isinstance(exc, error_type):
            return JSONResponse(status_code=status_code, content={"error": message or str(exc)})
    return JSONResponse(status_code=500, content={"error": "Internal error"})


def _configure_structured_logging() -> None:
    from meter_api.middleware.json_formatter import JSONFormatter

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
    - Initialise the async database engine.
    - Create database tables if they do not exist (dev convenience;
      production should use Alembic migrations).
    - Initialise the upstream LLM and identity provider HTTP clients.

    On shutdown:
    - Close both HTTP clients.
    - Dispose the database engine connection pool.
    """
    settings: APISettings = load_api_settings()

    # Fail fast: a deployed gateway without these secrets can neither
    # reach the upstream nor verify billing events.
    if settings.platform_env in (PlatformEnv.STAGING, PlatformEnv.PRODUCTION):
        missing = [
            name
            for name, value in (
                ("API_UPSTREAM_API_KEY", settings.upstream_api_key),
                ("API_STRIPE_WEBHOOK_SECRET", settings.stripe_webhook_secret),
            )
            if not value.get_secret_value()
        ]
        if missing:
            raise RuntimeError(
                f"{', '.join(missing)} required in {settings.platform_env.value} mode. Refusing to start."
            )

    if settings.structured_logging:
        _configure_structured_logging()
        logger.info("Structured JSON logging enabled")

    # Database engine.
    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s, %s)",
        settings.database_url[:40] + "...",
        "local" if is_local else "postgres",
    )

    # Auto-create tables in dev or local SQLite mode (idempotent).
    if settings.platform_env == PlatformEnv.DEV or is_local:
        from meter_core.state.tables import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(
            "Database tables ensured (%s)",
            "local SQLite" if is_local else "dev auto-migration",
        )

    init_upstream_client(settings)
    logger.info(
        "Upstream client initialised (%s, timeout=%.0fs)",
        settings.upstream_url,
        settings.upstream_timeout,
    )

    init_identity_provider(settings)
    logger.info("Identity provider initialised (%s)", settings.identity_url)

    yield

    # Shutdown.
    await dispose_identity_provider()
    await dispose_upstream_client()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="Meter API",
        description="Metered gateway for upstream LLM chat completions.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "X-Client-Info",
            "apikey",
            "X-Correlation-ID",
            "Accept",
        ],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    # Versioned API routes.
    app.include_router(health.router, prefix="/api/v1")
    app.include_router(proxy.router, prefix="/api/v1")
    app.include_router(usage.router, prefix="/api/v1")
    app.include_router(billing.router, prefix="/api/v1")

    # Metrics endpoint, outside /api/v1 versioning (Prometheus scrape).
    app.include_router(metrics_router.router)

    # Infrastructure endpoints, outside versioning (health checks, root-level).
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(MeterError)
    async def meter_error_handler(request: Request, exc: MeterError) -> JSONResponse:
        response = error_response(exc)
        if response.status_code >= 500:
            logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc)
        else:
            logger.info("%s on %s: %s", type(exc).__name__, request.url.path, exc)
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.warning("Validation error on %s: %s", request.url.path, exc.errors())
        return JSONResponse(status_code=400, content={"error": "Invalid request"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Internal storage error"})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error on %s", request.url.path, exc_info=exc)
        return JSONResponse(status_code=500, content={"error": "Internal error"})

    return app


# Module-level application instance used by ``uvicorn meter_api.main:app``.
app = create_app()
