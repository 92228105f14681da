"""Workflow Execution Engine - FastAPI Application."""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import get_settings
from api.v1.router import api_v1_router
from api.routes import health
from workflow.engine import get_workflow_engine, reset_workflow_engine
from core.logging_config import setup_logging
from core.middleware import RequestTrackingMiddleware, setup_exception_handlers

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    # Startup
    settings = get_settings()
    setup_logging()

    engine = get_workflow_engine()
    logger.info(
        "Workflow execution engine ready",
        max_concurrent_executions=engine.max_concurrent_executions,
    )
    logger.info(
        f"{settings.APP_NAME} v{settings.APP_VERSION} started",
        environment=settings.ENVIRONMENT,
    )
    yield
    # Shutdown
    logger.info("Application shutting down")
    await engine.shutdown()
    reset_workflow_engine()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Runs declarative workflows of tool, command, conditional, "
                    "loop, parallel, delay and manual steps.",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )

    # Request tracking middleware
    app.add_middleware(RequestTrackingMiddleware)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    )

    # Global exception handlers
    setup_exception_handlers(app)

    # Root health check (unversioned, for load balancers / k8s probes)
    app.include_router(health.router, prefix="/api", tags=["Health"])

    # Versioned API under /api/v1
    app.include_router(api_v1_router, prefix=settings.API_V1_PREFIX)

    return app


app = create_app()
