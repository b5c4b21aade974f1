"""FastAPI application entry-point for the deployment lifecycle control plane."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from deploy_core.errors import LifecycleError
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from deploy_api import __version__
from deploy_api.config import APISettings, PlatformEnv, load_api_settings
from deploy_api.dependencies import (
    dispose_engine,
    dispose_provider,
    get_lifecycle_settings,
    get_progress_hub,
    get_provider,
    get_store,
    init_engine,
    init_provider,
)
from deploy_api.middleware.logging import RequestLoggingMiddleware
from deploy_api.middleware.prometheus import PrometheusMiddleware
from deploy_api.routers import catalog, drafts, health, org_apps, provider_events
from deploy_api.routers import metrics as metrics_router

logger = logging.getLogger(__name__)

# HTTP status for each LifecycleError kind.
ERROR_STATUS: dict[str, int] = {
    "NotFound": 404,
    "AlreadyInProgress": 409,
    "AlreadyTaken": 409,
    "Conflict": 409,
    "InvalidTransition": 409,
    "AccessRequired": 422,
    "InvalidFormat": 422,
    "InvalidMember": 422,
    "NotForkable": 422,
    "ProviderError": 502,
    "Timeout": 504,
}


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine and state store.
    - Create tables in dev or local SQLite mode (production uses Alembic).
    - Initialise the compute provider client and the event bus.
    - Start the lifecycle sweeper (watchdog and draft expiry).

    On shutdown the sweeper is stopped, then the provider client and the
    engine pool are closed.
    """
    settings: APISettings = load_api_settings()

    if settings.structured_logging:
        from deploy_api.middleware.json_formatter import configure_json_logging

        configure_json_logging()
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info("Database engine initialised (%s)", "local" if is_local else "postgres")

    if settings.platform_env == PlatformEnv.DEV or is_local:
        from deploy_core.state.tables import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured (%s)", "local SQLite" if is_local else "dev auto-migration")

    init_provider(settings)
    logger.info("Provider client initialised (%s)", settings.provider_url)

    from deploy_api.services.event_bus import init_event_bus

    bus = init_event_bus()

    sweeper = None
    if settings.sweep_enabled:
        from deploy_api.services.draft_service import DraftService
        from deploy_api.services.lifecycle_sweeper import LifecycleSweeper
        from deploy_api.services.orchestrator import DeploymentOrchestrator

        store = get_store()
        provider = get_provider()
        lifecycle = get_lifecycle_settings()
        sweeper = LifecycleSweeper(
            DeploymentOrchestrator(
                store, provider, get_progress_hub(), lifecycle, bus=bus, callback_url=settings.callback_url
            ),
            DraftService(store, provider, lifecycle, bus=bus, callback_url=settings.callback_url),
            interval_seconds=settings.sweep_interval_seconds,
        )
        await sweeper.start()

    yield

    if sweeper is not None:
        await sweeper.stop()
    await dispose_provider()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="Deployment Lifecycle API",
        description="Control plane for organization app deployments, hostnames and draft previews.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-Correlation-ID", "X-User-ID", "Accept"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(catalog.router, prefix="/api/v1")
    app.include_router(org_apps.router, prefix="/api/v1")
    app.include_router(drafts.router, prefix="/api/v1")
    app.include_router(provider_events.router, prefix="/api/v1")

    # Metrics endpoint outside /api/v1 versioning (Prometheus scrape).
    app.include_router(metrics_router.router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(LifecycleError)
    async def lifecycle_error_handler(request: Request, exc: LifecycleError) -> JSONResponse:
        status_code = ERROR_STATUS.get(exc.kind, 400)
        if status_code >= 500:
            logger.warning("%s on %s: %s", exc.kind, request.url.path, exc.message)
        content: dict[str, object] = {"detail": exc.message, "kind": exc.kind}
        invalid_ids = getattr(exc, "invalid_ids", None)
        if invalid_ids:
            content["invalid_ids"] = invalid_ids
        return JSONResponse(status_code=status_code, content=content)

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})

    return app


# Module-level application instance used by ``uvicorn deploy_api.main:app``.
app = create_app()
