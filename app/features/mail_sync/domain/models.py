"""
Domain models for the mail sync feature.

Lightweight dataclasses shared by the repository, pipeline, services and
API layers. Storage documents use camelCase keys; these models use
snake_case and convert at the edges.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from .records import ProviderRecord, to_iso


class Source(StrEnum):
    MAIL = "mail"
    CALENDAR = "calendar"


class SyncStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (SyncStatus.COMPLETE, SyncStatus.ERROR)


class SyncType(StrEnum):
    AUTO = "auto"
    INITIAL = "initial"
    INCREMENTAL = "incremental"
    WINDOW = "window"


def parse_timestamp(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass(slots=True)
class Credential:
    """A tenant's decrypted OAuth credential."""

    refresh_token: str
    access_token: str | None
    expires_at: datetime | None
    scope: str = ""
    account_email: str | None = None

    def is_fresh(self, now: datetime, margin_seconds: int) -> bool:
        if not self.access_token or not self.expires_at:
            return False
        return self.expires_at > now + timedelta(seconds=margin_seconds)

    def has_calendar_scope(self) -> bool:
        return any("calendar" in scope for scope in self.scope.split())


@dataclass(slots=True)
class TokenGrant:
    """Token endpoint response."""

    access_token: str
    expires_in: int | None = None
    refresh_token: str | None = None
    scope: str = ""
    token_type: str = "Bearer"

    def expires_at(self, now: datetime) -> datetime | None:
        if self.expires_in is None:
            return None
        return now + timedelta(seconds=int(self.expires_in))


@dataclass(slots=True)
class StoredCursor:
    value: str | None
    updated_at: datetime | None

    def older_than(self, now: datetime, days: int) -> bool:
        if self.updated_at is None:
            return True
        return now - self.updated_at > timedelta(days=days)


@dataclass(slots=True)
class ChangePage:
    records: list[ProviderRecord]
    next_cursor: str
    has_more: bool


@dataclass(slots=True)
class RangePage:
    records: list[ProviderRecord]
    next_page_token: str | None = None


@dataclass(slots=True)
class PageStats:
    """Counters produced by reconciling one page."""

    processed: int = 0
    errors: int = 0
    last_error: str | None = None
    threads_upserted: int = 0
    messages_upserted: int = 0
    events_upserted: int = 0
    occurrences_upserted: int = 0
    contact_lookups: int = 0
    contacts_upserted: int = 0
    contacts_created: int = 0
    unlinked: int = 0
    deleted: int = 0

    def record_error(self, message: str) -> None:
        self.errors += 1
        self.last_error = message


@dataclass(slots=True)
class SyncJob:
    """Represents one tenant/source sync run."""

    id: str
    tenant_id: str
    source: Source
    sync_type: SyncType
    status: SyncStatus
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    processed_items: int = 0
    error_count: int = 0
    pages_processed: int = 0
    contacts_upserted: int = 0
    error_message: str | None = None
    last_error: str | None = None
    cancel_requested: bool = False

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    @classmethod
    def from_document(cls, tenant_id: str, doc: dict[str, Any]) -> "SyncJob":
        return cls(
            id=doc["id"],
            tenant_id=tenant_id,
            source=Source(doc["source"]),
            sync_type=SyncType(doc.get("type", SyncType.AUTO)),
            status=SyncStatus(doc["status"]),
            created_at=parse_timestamp(doc.get("createdAt")) or datetime.now(UTC),
            started_at=parse_timestamp(doc.get("startedAt")),
            finished_at=parse_timestamp(doc.get("finishedAt")),
            processed_items=doc.get("processedItems", 0),
            error_count=doc.get("errorCount", 0),
            pages_processed=doc.get("pagesProcessed", 0),
            contacts_upserted=doc.get("contactsUpserted", 0),
            error_message=doc.get("errorMessage"),
            last_error=doc.get("lastError"),
            cancel_requested=bool(doc.get("cancelRequested", False)),
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "source": str(self.source),
            "type": str(self.sync_type),
            "status": str(self.status),
            "createdAt": to_iso(self.created_at),
            "startedAt": to_iso(self.started_at),
            "finishedAt": to_iso(self.finished_at),
            "processedItems": self.processed_items,
            "errorCount": self.error_count,
            "pagesProcessed": self.pages_processed,
            "contactsUpserted": self.contacts_upserted,
            "errorMessage": self.error_message,
            "lastError": self.last_error,
            "cancelRequested": self.cancel_requested,
        }


@dataclass(slots=True)
class SyncRunSummary:
    """Totals from a scheduled sync sweep across tenants."""

    tenants: int = 0
    jobs_completed: int = 0
    jobs_failed: int = 0
    skipped: list[str] = field(default_factory=list)
