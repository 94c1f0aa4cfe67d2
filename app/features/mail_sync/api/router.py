"""
Sync routes: trigger runs and inspect the tenant's sync job history.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from app.auth.verify import current_tenant_id
from app.features.mail_sync.domain import Source, SyncJobStateError, SyncType
from app.features.mail_sync.services.sync_service import SyncService
from app.infrastructure.observability.logging import get_logger

from .schemas import (
    ClearHistoryResponse,
    SyncHistoryResponse,
    SyncJobResponse,
    SyncTriggerResponse,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


def get_sync_service(request: Request) -> SyncService:
    service = getattr(request.app.state, "sync_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Sync service not available"
        )
    return service


@router.post(
    "/{source}", response_model=SyncTriggerResponse, status_code=status.HTTP_202_ACCEPTED
)
async def trigger_sync(
    source: Source,
    sync_type: SyncType = Query(SyncType.AUTO, alias="type"),
    tenant_id: str = Depends(current_tenant_id),
    service: SyncService = Depends(get_sync_service),
):
    """Start a sync for one source. Returns immediately with the job id."""
    job = await service.trigger_sync(tenant_id, source, sync_type)
    return SyncTriggerResponse(job_id=job.id, status=str(job.status))


@router.get("/jobs", response_model=SyncHistoryResponse)
async def list_sync_jobs(
    source: Source | None = None,
    limit: int | None = Query(None, ge=1, le=100),
    tenant_id: str = Depends(current_tenant_id),
    service: SyncService = Depends(get_sync_service),
):
    jobs = await service.list_jobs(tenant_id, source=source, limit=limit)
    return SyncHistoryResponse(
        jobs=[SyncJobResponse.from_job(job) for job in jobs], total_count=len(jobs)
    )


@router.get("/jobs/latest", response_model=SyncJobResponse)
async def get_latest_sync_job(
    source: Source | None = None,
    tenant_id: str = Depends(current_tenant_id),
    service: SyncService = Depends(get_sync_service),
):
    job = await service.get_last_job(tenant_id, source)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No sync jobs yet")
    return SyncJobResponse.from_job(job)


@router.get("/jobs/{job_id}", response_model=SyncJobResponse)
async def get_sync_job(
    job_id: str,
    tenant_id: str = Depends(current_tenant_id),
    service: SyncService = Depends(get_sync_service),
):
    try:
        job = await service.get_job(tenant_id, job_id)
    except ValueError:
        job = None
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sync job not found")
    return SyncJobResponse.from_job(job)


@router.post("/jobs/{job_id}/cancel", response_model=SyncJobResponse)
async def cancel_sync_job(
    job_id: str,
    tenant_id: str = Depends(current_tenant_id),
    service: SyncService = Depends(get_sync_service),
):
    try:
        job = await service.request_cancel(tenant_id, job_id)
    except SyncJobStateError as e:
        code = (
            status.HTTP_404_NOT_FOUND
            if e.error_code == "job_not_found"
            else status.HTTP_409_CONFLICT
        )
        logger.info("Cancel rejected", tenant_id=tenant_id, job_id=job_id, error=e.message)
        raise HTTPException(status_code=code, detail=e.message)
    return SyncJobResponse.from_job(job)


@router.delete("/jobs", response_model=ClearHistoryResponse)
async def clear_sync_history(
    source: Source | None = None,
    tenant_id: str = Depends(current_tenant_id),
    service: SyncService = Depends(get_sync_service),
):
    """Remove finished jobs, keeping the most recent one."""
    deleted = await service.clear_history(tenant_id, source)
    return ClearHistoryResponse(deleted=deleted)
