"""
FastAPI application entry point.

Configures the application with:
- Lifespan handlers for logging and database setup
- CORS middleware
- Correlation ID middleware
- Health and readiness checks
- API routes
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from parkingmate.api import api_router
from parkingmate.api.deps import SessionFactory
from parkingmate.core.config import get_settings
from parkingmate.core.logging import (
    get_correlation_id,
    get_logger,
    set_correlation_id,
    setup_logging,
)
from parkingmate.infrastructure.db.session import close_db, init_db, ping_db
from parkingmate.infrastructure.email.notifier import close_notifier

# Initialize logging
setup_logging()
logger = get_logger(__name__)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str = "1.0.0"


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    status: str
    database_connected: bool


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Handles startup and shutdown tasks:
    - Startup: Create database tables
    - Shutdown: Close database and email client connections
    """
    logger.info("application_starting")

    try:
        await init_db()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("startup_failed", error=str(e))
        raise

    logger.info("application_started")

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await close_notifier()
    await close_db()
    logger.info("application_shutdown_complete")


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured application instance.
    """
    settings = get_settings()

    app = FastAPI(
        title="ParkingMate Detection Processor",
        description="License plate detection processing for parking lots",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [settings.app_base_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Correlation ID middleware
    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        """Add correlation ID to each request."""
        set_correlation_id(request.headers.get("X-Correlation-ID"))

        response = await call_next(request)

        response.headers["X-Correlation-ID"] = get_correlation_id()
        return response

    # Health check endpoints
    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["health"],
    )
    async def health_check() -> HealthResponse:
        """
        Basic liveness check.

        Returns 200 if the application is running.
        """
        return HealthResponse(status="healthy")

    @app.get(
        "/ready",
        response_model=ReadinessResponse,
        tags=["health"],
    )
    async def readiness_check(factory: SessionFactory):
        """
        Readiness check for load balancers.

        Returns 200 only if the database answers.
        """
        database_connected = True
        try:
            await ping_db(factory)
        except Exception as e:
            logger.warning("database_ping_failed", error=str(e))
            database_connected = False

        response = ReadinessResponse(
            status="ready" if database_connected else "not_ready",
            database_connected=database_connected,
        )

        if not database_connected:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content=response.model_dump(),
            )

        return response

    # Include API routes
    app.include_router(api_router)

    return app


# Create app instance
app = create_app()
