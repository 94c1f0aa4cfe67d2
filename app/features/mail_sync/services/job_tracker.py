"""
Sync job lifecycle tracking.

pending -> running -> complete | error, plus pending -> error for runs that
fail before starting. Terminal jobs are immutable: every mutation is a
guarded update that only matches while the stored status allows it, and
raises SyncJobStateError otherwise.
"""

import uuid
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

from app.features.mail_sync.domain import (
    PageStats,
    Source,
    SyncJob,
    SyncJobStateError,
    SyncStatus,
    SyncType,
)
from app.features.mail_sync.domain.records import to_iso
from app.features.mail_sync.repository.document_store import DocumentStore
from app.features.mail_sync.repository.paths import sync_jobs_path
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 500
ACTIVE_STATUSES = (SyncStatus.PENDING, SyncStatus.RUNNING)
DEFAULT_STALE_AFTER = timedelta(hours=1)


class SyncJobTracker:
    """Persistence helpers backing the sync job lifecycle."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        clock: Callable[[], datetime] | None = None,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
    ):
        self._store = store
        self._clock = clock or (lambda: datetime.now(UTC))
        self._stale_after = stale_after

    async def create(
        self,
        tenant_id: str,
        source: Source,
        sync_type: SyncType,
        *,
        store: DocumentStore | None = None,
    ) -> SyncJob:
        """Create a pending job and return it."""
        now = self._clock()
        job = SyncJob(
            id=uuid.uuid4().hex,
            tenant_id=tenant_id,
            source=source,
            sync_type=sync_type,
            status=SyncStatus.PENDING,
            created_at=now,
        )
        await (store or self._store).merge_sync_job(
            tenant_id, job.id, {**job.to_document(), "updatedAt": to_iso(now)}
        )
        logger.info(
            "Sync job created",
            tenant_id=tenant_id,
            job_id=job.id,
            source=str(source),
            sync_type=str(sync_type),
        )
        return job

    async def create_unless_active(
        self, tenant_id: str, source: Source, sync_type: SyncType
    ) -> tuple[SyncJob, bool]:
        """
        Create a pending job unless one for the same tenant and source is
        still pending or running.

        The check and the insert run in one transaction under a lock on the
        tenant's source, so concurrent callers agree on a single job. An
        active job with no progress for longer than the stale timeout is
        failed and no longer blocks.

        Returns:
            The new job and True, or the job already in flight and False.
        """
        async with self._store.transaction() as tx:
            await tx.lock(f"{sync_jobs_path(tenant_id)}#{source}")
            docs = await tx.list_sync_jobs_with_status(
                tenant_id, str(source), [str(s) for s in ACTIVE_STATUSES]
            )
            for doc in sorted(docs, key=lambda d: d.get("createdAt") or "", reverse=True):
                active = SyncJob.from_document(tenant_id, doc)
                if not self._is_stale(doc):
                    logger.info("Sync already active", tenant_id=tenant_id, job_id=active.id)
                    return active, False
                await self._transition(
                    tenant_id,
                    active.id,
                    ACTIVE_STATUSES,
                    self._error_fields("abandoned: no progress before the stale timeout"),
                    store=tx,
                )
                logger.warning("Stale sync job abandoned", tenant_id=tenant_id, job_id=active.id)

            job = await self.create(tenant_id, source, sync_type, store=tx)
        return job, True

    async def get(self, tenant_id: str, job_id: str) -> SyncJob | None:
        doc = await self._store.get_sync_job(tenant_id, job_id)
        return SyncJob.from_document(tenant_id, doc) if doc else None

    async def list_jobs(
        self, tenant_id: str, *, source: Source | None = None, limit: int = 20
    ) -> list[SyncJob]:
        docs = await self._store.list_sync_jobs(
            tenant_id, source=str(source) if source else None, limit=limit
        )
        return [SyncJob.from_document(tenant_id, doc) for doc in docs]

    async def mark_running(self, tenant_id: str, job_id: str) -> None:
        now = to_iso(self._clock())
        await self._transition(
            tenant_id,
            job_id,
            (SyncStatus.PENDING,),
            {"status": str(SyncStatus.RUNNING), "startedAt": now, "updatedAt": now},
        )
        logger.info("Sync job running", tenant_id=tenant_id, job_id=job_id)

    async def record_page(self, tenant_id: str, job_id: str, stats: PageStats) -> None:
        """Fold one page's counters into the job."""
        fields = {"updatedAt": to_iso(self._clock())}
        if stats.last_error:
            fields["lastError"] = stats.last_error[:MAX_ERROR_MESSAGE_LENGTH]
        await self._transition(
            tenant_id,
            job_id,
            (SyncStatus.RUNNING,),
            fields,
            increments={
                "processedItems": stats.processed,
                "errorCount": stats.errors,
                "pagesProcessed": 1,
                "contactsUpserted": stats.contacts_upserted,
            },
        )

    async def mark_complete(self, tenant_id: str, job_id: str) -> None:
        now = to_iso(self._clock())
        await self._transition(
            tenant_id,
            job_id,
            (SyncStatus.RUNNING,),
            {
                "status": str(SyncStatus.COMPLETE),
                "finishedAt": now,
                "updatedAt": now,
                "errorMessage": None,
            },
        )
        logger.info("Sync job complete", tenant_id=tenant_id, job_id=job_id)

    async def mark_error(self, tenant_id: str, job_id: str, error_message: str) -> None:
        """Fail the job; counters recorded so far are kept."""
        fields = self._error_fields(error_message)
        await self._transition(tenant_id, job_id, ACTIVE_STATUSES, fields)
        logger.warning(
            "Sync job failed", tenant_id=tenant_id, job_id=job_id, error=fields["errorMessage"]
        )

    async def request_cancel(self, tenant_id: str, job_id: str) -> SyncJob:
        await self._transition(tenant_id, job_id, ACTIVE_STATUSES, {"cancelRequested": True})
        logger.info("Sync job cancellation requested", tenant_id=tenant_id, job_id=job_id)
        return await self.get(tenant_id, job_id)

    async def cancel_requested(self, tenant_id: str, job_id: str) -> bool:
        job = await self.get(tenant_id, job_id)
        return bool(job and job.cancel_requested)

    def _error_fields(self, error_message: str) -> dict[str, Any]:
        now = to_iso(self._clock())
        return {
            "status": str(SyncStatus.ERROR),
            "finishedAt": now,
            "updatedAt": now,
            "errorMessage": (error_message or "")[:MAX_ERROR_MESSAGE_LENGTH],
        }

    def _is_stale(self, doc: Mapping[str, Any]) -> bool:
        last_activity = doc.get("updatedAt") or doc.get("createdAt")
        if not last_activity:
            return True
        return last_activity < to_iso(self._clock() - self._stale_after)

    async def _transition(
        self,
        tenant_id: str,
        job_id: str,
        allowed: tuple[SyncStatus, ...],
        fields: Mapping[str, Any],
        *,
        increments: Mapping[str, int] | None = None,
        store: DocumentStore | None = None,
    ) -> None:
        store = store or self._store
        updated = await store.update_sync_job_if_status(
            tenant_id, job_id, [str(s) for s in allowed], fields, increments=increments
        )
        if updated:
            return

        doc = await store.get_sync_job(tenant_id, job_id)
        if doc is None:
            raise SyncJobStateError(f"Sync job {job_id} not found", error_code="job_not_found")
        raise SyncJobStateError(
            f"Sync job {job_id} is {doc.get('status')}; expected one of "
            f"{', '.join(sorted(str(s) for s in allowed))}"
        )
