# app/main.py
"""
Application entrypoint with database pool and publishing service lifecycle.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from app.config import settings
from app.container import PublishingContainer
from app.db.pool import db_pool
from app.features.publishing.api import publishing_router
from app.infrastructure.observability.logging import get_logger, log_request, setup_logging
from app.middleware.request_context import RequestContextMiddleware
from app.routes import health

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL, json_logs=settings.LOG_JSON)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""

    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    startup_tasks = []
    container: PublishingContainer | None = None

    try:
        # Database pool first, every repository needs it
        logger.info("Initializing database pool")
        await db_pool.initialize()
        startup_tasks.append("database_pool")

        logger.info("Building publishing services")
        container = PublishingContainer.build()
        container.start(run_aggregator=settings.RUN_AGGREGATOR_IN_API)
        app.state.publishing = container
        startup_tasks.append("publishing")

        logger.info("All services initialized successfully", services=startup_tasks)

    except Exception as e:
        logger.error("Failed to initialize services", error=str(e), completed_tasks=startup_tasks)

        # Clean up any successfully initialized services in reverse order
        if container is not None:
            try:
                await container.dispose()
            except Exception as cleanup_error:
                logger.error("Error cleaning up publishing services", error=str(cleanup_error))

        if "database_pool" in startup_tasks:
            try:
                await db_pool.close()
            except Exception as cleanup_error:
                logger.error("Error cleaning up database pool", error=str(cleanup_error))

        raise

    yield

    # Shutdown sequence (reverse order)
    logger.info("Application shutting down")

    shutdown_errors = []

    # Stop the aggregator before the pool so no claim is left half-done
    try:
        logger.info("Stopping publishing services")
        await container.dispose()
    except Exception as e:
        logger.error("Error stopping publishing services", error=str(e))
        shutdown_errors.append(f"Publishing: {e}")
    app.state.publishing = None

    try:
        logger.info("Closing database pool")
        await db_pool.close()
    except Exception as e:
        logger.error("Error closing database pool", error=str(e))
        shutdown_errors.append(f"Database: {e}")

    if shutdown_errors:
        logger.warning("Some services had shutdown errors", errors=shutdown_errors)
    else:
        logger.info("All services closed successfully")


app = FastAPI(
    title="Newsroom Publishing Service",
    description="Turns trusted WhatsApp and email submissions into articles",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(health.router)
app.include_router(publishing_router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    log_request(request.method, request.url.path, response.status_code, round(process_time, 2))
    return response


# Added last so it wraps request logging and the request_id is bound
app.add_middleware(RequestContextMiddleware)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
