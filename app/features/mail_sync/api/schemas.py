"""
API response models for the sync endpoints.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from app.features.mail_sync.domain import SyncJob


class SyncJobResponse(BaseModel):
    """One sync job as exposed over HTTP."""

    job_id: str = Field(..., description="Sync job id")
    source: str = Field(..., description="mail or calendar")
    sync_type: str = Field(..., description="auto, initial, incremental or window")
    status: str = Field(..., description="pending, running, complete or error")
    created_at: datetime = Field(..., description="When the job was created")
    started_at: datetime | None = Field(None, description="When the run started")
    finished_at: datetime | None = Field(None, description="When the run reached a terminal state")
    processed_items: int = Field(0, description="Records attempted so far")
    error_count: int = Field(0, description="Records that failed to apply")
    pages_processed: int = Field(0, description="Provider pages applied")
    contacts_upserted: int = Field(0, description="Contact writes performed")
    error_message: str | None = Field(None, description="Why the run failed, if it did")
    last_error: str | None = Field(None, description="Most recent per-record error")
    cancel_requested: bool = Field(False, description="Whether cancellation was requested")

    @classmethod
    def from_job(cls, job: SyncJob) -> "SyncJobResponse":
        return cls(
            job_id=job.id,
            source=str(job.source),
            sync_type=str(job.sync_type),
            status=str(job.status),
            created_at=job.created_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
            processed_items=job.processed_items,
            error_count=job.error_count,
            pages_processed=job.pages_processed,
            contacts_upserted=job.contacts_upserted,
            error_message=job.error_message,
            last_error=job.last_error,
            cancel_requested=job.cancel_requested,
        )


class SyncTriggerResponse(BaseModel):
    job_id: str = Field(..., description="Id of the started (or already running) job")
    status: str = Field(..., description="Current status of that job")


class SyncHistoryResponse(BaseModel):
    jobs: list[SyncJobResponse] = Field(default_factory=list)
    total_count: int = Field(0, description="Number of jobs returned")


class ClearHistoryResponse(BaseModel):
    deleted: int = Field(..., description="Number of job records removed")


class GoogleAuthURLResponse(BaseModel):
    """Consent URL for linking the tenant's Google account."""

    auth_url: str = Field(..., description="Google OAuth authorization URL")
    state: str = Field(..., description="OAuth state parameter; send it back with the code")
    scopes: list[str] = Field(default_factory=list, description="Scopes requested")


class GoogleAuthCallbackRequest(BaseModel):
    code: str = Field(..., min_length=1, description="Authorization code from the OAuth redirect")
    state: str = Field(..., min_length=1, description="State returned by the OAuth redirect")


class GoogleAuthCallbackResponse(BaseModel):
    connected: bool = Field(..., description="Whether the grant was stored")
    account_email: str | None = Field(None, description="Mailbox address of the linked account")
    calendar_connected: bool = Field(False, description="Whether calendar access was granted")
