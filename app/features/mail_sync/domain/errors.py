"""
Exception taxonomy for the mail/calendar sync pipeline.

Every error carries a machine readable ``error_code`` and a
``recoverable`` flag. The orchestrator turns these into result values
at a single boundary; nothing below it decides whether to retry.
"""


class MailSyncError(Exception):
    """Base class for sync pipeline errors."""

    error_code = "sync_error"
    recoverable = False

    def __init__(self, message: str, *, error_code: str | None = None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code


# --- credentials -----------------------------------------------------------


class AuthRevoked(MailSyncError):
    """The stored grant can no longer produce tokens; the tenant must re-authorize."""

    error_code = "auth_revoked"


class CredentialMissing(AuthRevoked):
    """No credential has been stored for the tenant."""

    error_code = "credential_missing"


class TransientAuthError(MailSyncError):
    """Token endpoint or provider auth failed in a way worth retrying."""

    error_code = "transient_auth"
    recoverable = True


# --- provider --------------------------------------------------------------


class RateLimited(MailSyncError):
    """Provider asked us to slow down."""

    error_code = "rate_limited"
    recoverable = True

    def __init__(self, message: str, *, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class TransientProviderError(MailSyncError):
    """5xx or connection failure talking to the provider."""

    error_code = "provider_unavailable"
    recoverable = True

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderTimeout(TransientProviderError):
    error_code = "provider_timeout"


class CursorInvalidated(MailSyncError):
    """The stored cursor is no longer accepted; a full resync is required."""

    error_code = "cursor_invalid"


class ProviderProtocolError(MailSyncError):
    """Response did not match the provider contract."""

    error_code = "protocol_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        resume_cursor: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.resume_cursor = resume_cursor


# --- storage / lifecycle ---------------------------------------------------


class RecordWriteError(MailSyncError):
    """A single record could not be written. Counted, never fatal."""

    error_code = "record_write_failed"
    recoverable = True

    def __init__(self, message: str, *, external_id: str | None = None):
        super().__init__(message)
        self.external_id = external_id


class SyncJobStateError(MailSyncError):
    """Attempted transition out of a terminal (or otherwise wrong) job state."""

    error_code = "invalid_job_state"
