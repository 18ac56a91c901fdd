"""FastAPI application entry-point for the car-wash platform API."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api import __version__
from api.config import APISettings, PlatformEnv, load_api_settings
from api.dependencies import (
    dispose_engine,
    dispose_payu_client,
    get_session_factory,
    init_engine,
    init_payu_client,
    init_token_manager,
)
from api.errors import CarwashError
from api.middleware.edge_routing import EdgeRoutingMiddleware
from api.middleware.logging import RequestLoggingMiddleware, configure_json_logging
from api.routers import (
    admin,
    auth,
    billing,
    cron,
    health,
    invoices,
    payments,
    plans,
    team,
    webhooks,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Refuse to start in staging/production without ``API_AUTH_SECRET``.
    - Initialise the async database engine.
    - Create database tables if they do not exist (dev convenience;
      production should use migrations).
    - Initialise the session token manager and the PayU client.
    - Start the in-process reconciliation loop when an interval is set.

    On shutdown:
    - Stop the reconciliation loop.
    - Close the PayU client and dispose the engine connection pool.
    """
    settings: APISettings = load_api_settings()

    # Fail fast: signing sessions with an empty key is never acceptable
    # outside local development.
    if settings.platform_env in (PlatformEnv.STAGING, PlatformEnv.PRODUCTION) and not (
        settings.auth_secret.get_secret_value()
    ):
        raise RuntimeError(
            f"API_AUTH_SECRET environment variable is required in {settings.platform_env.value} mode. "
            "Refusing to start."
        )

    # Structured JSON logging.
    if settings.structured_logging:
        configure_json_logging()
        logger.info("Structured JSON logging enabled")

    # Database engine.
    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s, %s)",
        settings.database_url.split("@")[-1][:40],
        "local" if is_local else "postgres",
    )

    # Auto-create tables in dev or local SQLite mode (idempotent).
    if settings.platform_env == PlatformEnv.DEV or is_local:
        from carwash_core.state.sqlite_adapter import create_local_tables

        await create_local_tables(engine)
        logger.info(
            "Database tables ensured (%s)",
            "local SQLite" if is_local else "dev auto-migration",
        )

    init_token_manager(settings)
    init_payu_client(settings)
    logger.info("PayU client initialised (test_mode=%s)", settings.payu_test_mode)

    scheduler = None
    if settings.reconciliation_interval_seconds > 0:
        from api.services.reconciliation_scheduler import ReconciliationScheduler

        scheduler = ReconciliationScheduler(get_session_factory(), settings.reconciliation_interval_seconds)
        await scheduler.start()

    yield

    # Shutdown.
    if scheduler is not None:
        await scheduler.stop()
    await dispose_payu_client()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="Car Wash Platform API",
        description="Multi-tenant car-wash management: tenant routing, access control and billing.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (last added runs outermost) -------------------------------

    app.add_middleware(EdgeRoutingMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
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

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api")
    app.include_router(auth.router, prefix="/api")
    app.include_router(plans.router, prefix="/api")
    app.include_router(billing.router, prefix="/api")
    app.include_router(invoices.router, prefix="/api")
    app.include_router(payments.router, prefix="/api")
    app.include_router(team.router, prefix="/api")
    app.include_router(webhooks.router, prefix="/api")
    app.include_router(cron.router, prefix="/api")
    app.include_router(admin.router, prefix="/api")

    # Infrastructure endpoints at the root (probes).
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(CarwashError)
    async def carwash_error_handler(request: Request, exc: CarwashError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.warning("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        # Log the field errors for debugging; return a safe message to the client.
        logger.warning("Validation error on %s: %s", request.url.path, exc.errors())
        return JSONResponse(status_code=400, content={"error": "Invalid request"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error on %s: %s", request.url.path, exc, exc_info=True)
        return JSONResponse(status_code=500, content={"error": "internal error"})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error on %s: %s", request.url.path, exc, exc_info=True)
        return JSONResponse(status_code=500, content={"error": "internal error"})

    return app


# Module-level application instance used by ``uvicorn api.main:app``.
app = create_app()
