"""
FastAPI application with database pool and sync service lifecycle management.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from app.config import settings
from app.db.pool import db_pool
from app.features.mail_sync.api.auth_router import router as auth_router
from app.features.mail_sync.api.router import router as sync_router
from app.features.mail_sync.providers import create_http_client
from app.features.mail_sync.repository.postgres_store import PostgresDocumentStore
from app.features.mail_sync.services import create_account_link_service, create_sync_service
from app.infrastructure.observability.logging import get_logger, log_request, setup_logging
from app.routes import health

# Setup logging before creating the app
setup_logging(log_level=settings.log_level)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""

    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    startup_tasks = []
    http = None

    try:
        logger.info("Initializing database pool")
        await db_pool.initialize()
        startup_tasks.append("database_pool")

        await PostgresDocumentStore.ensure_schema()
        startup_tasks.append("document_store")

        config = settings.sync_config()
        http = create_http_client(config)
        app.state.sync_service = create_sync_service(config, PostgresDocumentStore(), http)
        startup_tasks.append("sync_service")

        app.state.account_links = create_account_link_service(config, PostgresDocumentStore(), http)
        startup_tasks.append("account_links")

        logger.info("All services initialized successfully", services=startup_tasks)

    except Exception as e:
        logger.error("Failed to initialize services", error=str(e), completed_tasks=startup_tasks)

        if http is not None:
            await http.aclose()

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

    try:
        logger.info("Stopping in-flight sync jobs")
        await app.state.sync_service.shutdown()
    except Exception as e:
        logger.error("Error stopping sync service", error=str(e))
        shutdown_errors.append(f"Sync service: {e}")

    try:
        await http.aclose()
    except Exception as e:
        logger.error("Error closing HTTP client", error=str(e))
        shutdown_errors.append(f"HTTP client: {e}")

    # Close database pool last (may have active connections)
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
    title="Mail Sync",
    description="Mail and calendar ingestion with contact linking",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(health.router)
app.include_router(sync_router)
app.include_router(auth_router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    log_request(
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(process_time, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
