"""
Sync service: the entry points used by the HTTP layer and the scheduler.

Runs triggered from HTTP are started as background tasks. Both the HTTP
trigger and the scheduled sweep create jobs through the tracker's
single-active-job guard, so a second request while a run for the same
tenant and source is in flight gets that run instead of a new one.
"""

import asyncio
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta

import httpx

from app.config import SyncConfig
from app.db.helpers import DatabaseError
from app.features.mail_sync.domain import (
    Source,
    SyncJob,
    SyncRunSummary,
    SyncStatus,
    SyncType,
)
from app.features.mail_sync.pipeline import ContactResolver, Reconciler
from app.features.mail_sync.providers import GmailClient, GoogleCalendarClient, GoogleOAuthClient
from app.features.mail_sync.repository.document_store import DocumentStore
from app.infrastructure.observability.logging import get_logger

from .job_tracker import SyncJobTracker
from .orchestrator import SyncOrchestrator
from .token_manager import TokenManager

logger = get_logger(__name__)


class SyncService:
    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        tracker: SyncJobTracker,
        store: DocumentStore,
        token_manager: TokenManager,
        config: SyncConfig,
    ):
        self._orchestrator = orchestrator
        self._tracker = tracker
        self._store = store
        self._tokens = token_manager
        self._config = config
        self._tasks: set[asyncio.Task] = set()

    async def trigger_sync(
        self, tenant_id: str, source: Source, sync_type: SyncType = SyncType.AUTO
    ) -> SyncJob:
        """Start a background run, or return the one already in flight."""
        job, created = await self._tracker.create_unless_active(tenant_id, source, sync_type)
        if not created:
            return job

        task = asyncio.create_task(self._run_background(tenant_id, source, job.id, sync_type))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job

    async def _run_background(
        self, tenant_id: str, source: Source, job_id: str, sync_type: SyncType
    ) -> None:
        try:
            await self._orchestrator.run(tenant_id, source, job_id, sync_type)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Background sync crashed",
                tenant_id=tenant_id,
                job_id=job_id,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def get_job(self, tenant_id: str, job_id: str) -> SyncJob | None:
        return await self._tracker.get(tenant_id, job_id)

    async def get_last_job(self, tenant_id: str, source: Source | None = None) -> SyncJob | None:
        jobs = await self._tracker.list_jobs(tenant_id, source=source, limit=1)
        return jobs[0] if jobs else None

    async def list_jobs(
        self, tenant_id: str, *, source: Source | None = None, limit: int | None = None
    ) -> list[SyncJob]:
        return await self._tracker.list_jobs(
            tenant_id, source=source, limit=limit or self._config.history_limit
        )

    async def request_cancel(self, tenant_id: str, job_id: str) -> SyncJob:
        """Flag a running job; the orchestrator stops at the next page boundary."""
        return await self._tracker.request_cancel(tenant_id, job_id)

    async def clear_history(self, tenant_id: str, source: Source | None = None) -> int:
        """
        Delete finished jobs except the most recent one.

        Jobs that are still pending or running are never deleted.
        """
        docs = await self._store.list_sync_jobs(
            tenant_id, source=str(source) if source else None, limit=None
        )
        stale = [
            doc["id"]
            for doc in docs[1:]
            if SyncStatus(doc.get("status", SyncStatus.ERROR)).terminal
        ]
        deleted = await self._store.delete_sync_jobs(tenant_id, stale)
        logger.info("Sync history cleared", tenant_id=tenant_id, deleted=deleted)
        return deleted

    async def run_for_all_tenants(
        self, sources: Iterable[Source] = (Source.MAIL, Source.CALENDAR)
    ) -> SyncRunSummary:
        """Sequential sweep used by the scheduled job."""
        summary = SyncRunSummary()
        tenants = await self._store.list_tenants_with_credentials()

        for tenant_id in tenants:
            summary.tenants += 1
            for source in sources:
                if not await self._tokens.can_sync(tenant_id, source):
                    summary.skipped.append(f"{tenant_id}:{source}")
                    continue
                try:
                    job, created = await self._tracker.create_unless_active(
                        tenant_id, source, SyncType.AUTO
                    )
                    if not created:
                        summary.skipped.append(f"{tenant_id}:{source}")
                        continue
                    job = await self._orchestrator.run(tenant_id, source, job.id, SyncType.AUTO)
                except DatabaseError as e:
                    logger.error("Scheduled sync could not run", tenant_id=tenant_id, error=str(e))
                    summary.jobs_failed += 1
                    continue

                if job and job.status == SyncStatus.COMPLETE:
                    summary.jobs_completed += 1
                else:
                    summary.jobs_failed += 1

        logger.info(
            "Scheduled sync sweep finished",
            tenants=summary.tenants,
            completed=summary.jobs_completed,
            failed=summary.jobs_failed,
            skipped=len(summary.skipped),
        )
        return summary

    async def wait_for_pending(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel in-flight runs; each is marked as interrupted."""
        for task in list(self._tasks):
            task.cancel()
        await self.wait_for_pending()


def create_sync_service(
    config: SyncConfig,
    store: DocumentStore,
    http: httpx.AsyncClient,
    *,
    clock: Callable[[], datetime] | None = None,
) -> SyncService:
    """Wire the pipeline together against one store and one HTTP client."""
    clock = clock or (lambda: datetime.now(UTC))
    oauth = GoogleOAuthClient(http, config)
    token_manager = TokenManager(store, oauth, config, clock=clock)
    tracker = SyncJobTracker(
        store, clock=clock, stale_after=timedelta(minutes=config.stale_job_minutes)
    )
    reconciler = Reconciler(store, ContactResolver(store, clock=clock), clock=clock)
    providers = {
        Source.MAIL: GmailClient(http, config),
        Source.CALENDAR: GoogleCalendarClient(http, config),
    }
    orchestrator = SyncOrchestrator(
        config, store, token_manager, providers, reconciler, tracker, clock=clock
    )
    return SyncService(orchestrator, tracker, store, token_manager, config)
