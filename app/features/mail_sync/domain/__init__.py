"""
Domain subpackage for the mail sync feature.
"""

from .errors import (
    AuthRevoked,
    CredentialMissing,
    CursorInvalidated,
    MailSyncError,
    ProviderProtocolError,
    ProviderTimeout,
    RateLimited,
    RecordWriteError,
    SyncJobStateError,
    TransientAuthError,
    TransientProviderError,
)
from .models import (
    ChangePage,
    Credential,
    PageStats,
    RangePage,
    Source,
    StoredCursor,
    SyncJob,
    SyncRunSummary,
    SyncStatus,
    SyncType,
    TokenGrant,
)
from .records import (
    EventChanged,
    MessageRecord,
    OccurrenceRecord,
    Participant,
    ProviderRecord,
    RecordDeleted,
    RecordKind,
    ThreadChanged,
)
from .result import Err, ErrorKind, Ok, Result

__all__ = [
    "AuthRevoked",
    "ChangePage",
    "Credential",
    "CredentialMissing",
    "CursorInvalidated",
    "Err",
    "ErrorKind",
    "EventChanged",
    "MailSyncError",
    "MessageRecord",
    "OccurrenceRecord",
    "Ok",
    "PageStats",
    "Participant",
    "ProviderProtocolError",
    "ProviderRecord",
    "ProviderTimeout",
    "RangePage",
    "RateLimited",
    "RecordDeleted",
    "RecordKind",
    "RecordWriteError",
    "Result",
    "Source",
    "StoredCursor",
    "SyncJob",
    "SyncJobStateError",
    "SyncRunSummary",
    "SyncStatus",
    "SyncType",
    "ThreadChanged",
    "TokenGrant",
    "TransientAuthError",
    "TransientProviderError",
]
