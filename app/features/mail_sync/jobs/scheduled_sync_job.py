"""
Scheduled sync job.

Runs inside the worker service: every interval it sweeps all tenants
with a stored credential and syncs mail and calendar sequentially.
"""

import asyncio

from app.config import settings
from app.db.pool import db_pool
from app.features.mail_sync.domain import SyncRunSummary
from app.features.mail_sync.providers import create_http_client
from app.features.mail_sync.repository.postgres_store import PostgresDocumentStore
from app.features.mail_sync.services.sync_service import create_sync_service
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


async def run_scheduled_sync() -> SyncRunSummary:
    """One sweep over every tenant, with its own pool and HTTP client."""
    config = settings.sync_config()
    opened_pool = not db_pool.initialized
    if opened_pool:
        await db_pool.initialize()

    try:
        await PostgresDocumentStore.ensure_schema()
        async with create_http_client(config) as http:
            service = create_sync_service(config, PostgresDocumentStore(), http)
            return await service.run_for_all_tenants()
    finally:
        if opened_pool:
            await db_pool.close()


async def start_scheduled_sync_scheduler() -> None:
    """Run the sweep forever, sleeping the configured interval between runs."""
    interval_minutes = settings.sync_config().schedule_interval_minutes
    logger.info("Starting scheduled sync", interval_minutes=interval_minutes)

    while True:
        try:
            summary = await run_scheduled_sync()
            logger.info(
                "Scheduled sync cycle completed",
                tenants=summary.tenants,
                jobs_completed=summary.jobs_completed,
                jobs_failed=summary.jobs_failed,
            )
            await asyncio.sleep(interval_minutes * 60)

        except Exception as e:
            logger.error("Error in scheduled sync loop", error=str(e), error_type=type(e).__name__)
            # Back off before the next attempt to avoid a tight error loop
            await asyncio.sleep(60)


if __name__ == "__main__":
    asyncio.run(run_scheduled_sync())
