"""
BRD Sync FastAPI application.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from brdsync.api import api_router
from brdsync.core.config import get_settings
from brdsync.core.database import close_db
from brdsync.core.error_handlers import register_exception_handlers
from brdsync.core.logging import configure_logging
from brdsync.core.middleware import LoggingMiddleware, RequestIDMiddleware
from brdsync.core.migrations import run_migrations_async
from brdsync.services.container import ServiceContainer

configure_logging()
logger = logging.getLogger(__name__)

# Get settings
settings = get_settings()


def _in_test_environment() -> bool:
    return bool(os.getenv("PYTEST_CURRENT_TEST"))


async def _run_migrations_with_retry(max_attempts: int = 3) -> None:
    """Run database migrations with retry logic."""
    for attempt in range(1, max_attempts + 1):
        try:
            logger.info(
                f"Running database migrations... (attempt {attempt}/{max_attempts})"
            )
            await run_migrations_async()
            return
        except Exception as e:
            logger.error(f"Migration attempt {attempt} failed: {e}")
            if attempt >= max_attempts:
                logger.error(
                    f"Failed to apply migrations after {max_attempts} attempts"
                )
                raise RuntimeError(
                    f"Database migrations failed after {max_attempts} attempts: {e}"
                ) from e
            logger.info("Waiting 5 seconds before retry...")
            await asyncio.sleep(5)


async def _startup_tasks(app: FastAPI) -> None:
    """Run all startup tasks."""
    # Skip migrations in test environment
    if _in_test_environment():
        logger.info("Skipping migrations in test environment")
    else:
        await _run_migrations_with_retry()

    if getattr(app.state, "services", None) is None:
        app.state.services = ServiceContainer(settings=settings)

    # Workers and scheduler stay off under pytest to avoid SQLite contention
    if not _in_test_environment():
        logger.info("Starting sync workers and scheduler...")
        await app.state.services.start()
    else:
        logger.info("Skipping background workers in test environment")

    logger.info("Application startup complete")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    logger.info(f"Starting {settings.app.name} v{settings.app.version}")

    try:
        await _startup_tasks(app)
    except Exception as e:
        logger.error("=" * 80)
        logger.error("APPLICATION STARTUP FAILURE")
        logger.error("=" * 80)
        logger.error(f"Failed to start application: {e}")
        logger.error(f"Error type: {type(e).__name__}")
        if e.__cause__:
            logger.error(f"Caused by: {e.__cause__}")
        logger.error("=" * 80)
        raise

    yield

    logger.info(f"Shutting down {settings.app.name}")

    try:
        if not _in_test_environment():
            logger.info("Stopping sync workers and scheduler...")
            await app.state.services.close()
        else:
            logger.info("Skipping worker shutdown in test environment")

        logger.info("Closing database connections...")
        await close_db()

        logger.info("Application shutdown complete")

    except Exception as e:
        logger.error(f"Error during shutdown: {e}")


# Create FastAPI app
app = FastAPI(
    title=settings.app.name,
    version=settings.app.version,
    description="Bi-directional synchronization of BRDs with Jira issues",
    docs_url="/docs" if settings.app.debug else None,
    redoc_url="/redoc" if settings.app.debug else None,
    openapi_url="/openapi.json" if settings.app.debug else None,
    lifespan=lifespan,
)

# Register exception handlers
register_exception_handlers(app)

# Add middleware (order matters - last added is first to process)
app.add_middleware(LoggingMiddleware)
app.add_middleware(RequestIDMiddleware)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors.origins,
    allow_credentials=settings.cors.credentials,
    allow_methods=settings.cors.methods,
    allow_headers=settings.cors.headers,
)

# Include API router
app.include_router(api_router, prefix="/api")


# Liveness endpoint outside of the API prefix for monitoring
@app.get("/health", include_in_schema=False)
async def health_check() -> Dict[str, str]:
    """Basic health check endpoint."""
    return {"status": "healthy"}


@app.get("/version", include_in_schema=False)
async def version_info() -> Dict[str, Any]:
    """Get application version information."""
    return {
        "name": settings.app.name,
        "version": settings.app.version,
        "environment": settings.app.environment,
        "debug": settings.app.debug,
    }
