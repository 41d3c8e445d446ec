"""Chain Execution Engine - FastAPI Application."""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI

from app.config import get_settings
from app.runtime import ChainRuntime, build_runtime
from api.v1.router import api_v1_router
from core.logging_config import setup_logging
from core.middleware import RequestTrackingMiddleware, setup_exception_handlers

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    setup_logging()

    # Refuse to start in production without a checkpoint encryption key
    settings.validate_secrets()

    runtime: Optional[ChainRuntime] = getattr(app.state, "runtime", None)
    if runtime is None:
        runtime = await build_runtime(settings)
        app.state.runtime = runtime

    await runtime.start()
    recovered = sum(1 for r in runtime.recovered if r.recovered)
    logger.info(
        "Application started",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        chains=len(runtime.chains),
        workers=settings.MAX_CONCURRENT_EXECUTIONS,
        recovered=recovered,
    )
    yield
    await runtime.stop()
    logger.info("Application shut down")


def create_app(runtime: Optional[ChainRuntime] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        runtime: Pre-built runtime; built from settings at startup if omitted.
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Executes multi-step automation chains with retries, "
                    "circuit breaking, routing and crash recovery.",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )
    if runtime is not None:
        app.state.runtime = runtime

    # Request tracking middleware
    app.add_middleware(RequestTrackingMiddleware)

    # Global exception handlers
    setup_exception_handlers(app)

    # Versioned API, all endpoints under /api/v1
    app.include_router(api_v1_router, prefix=settings.API_V1_PREFIX)

    return app


app = create_app()
