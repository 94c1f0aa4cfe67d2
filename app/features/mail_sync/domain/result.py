"""
Explicit success/failure values used by the orchestrator's retry loop.
"""

from dataclasses import dataclass
from enum import StrEnum
from typing import Generic, TypeAlias, TypeVar

from .errors import (
    AuthRevoked,
    CursorInvalidated,
    MailSyncError,
    ProviderProtocolError,
    ProviderTimeout,
    RateLimited,
    TransientAuthError,
    TransientProviderError,
)

T = TypeVar("T")


class ErrorKind(StrEnum):
    AUTH_REVOKED = "auth_revoked"
    TRANSIENT_AUTH = "transient_auth"
    RATE_LIMITED = "rate_limited"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    TIMEOUT = "timeout"
    CURSOR_INVALID = "cursor_invalid"
    PROTOCOL = "protocol_error"
    RETRY_EXHAUSTED = "retry_exhausted"
    STORE = "store_error"
    CANCELLED = "cancelled"
    INTERNAL = "internal_error"


RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.TRANSIENT_AUTH,
        ErrorKind.RATE_LIMITED,
        ErrorKind.PROVIDER_UNAVAILABLE,
        ErrorKind.TIMEOUT,
    }
)


@dataclass(slots=True, frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(slots=True, frozen=True)
class Err:
    kind: ErrorKind
    message: str
    retry_after: float | None = None
    resume_cursor: str | None = None

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def describe(self) -> str:
        return f"{self.kind}: {self.message}"


Result: TypeAlias = Ok | Err


def err_from_exception(exc: MailSyncError) -> Err:
    """Classify a pipeline exception. Order matters: subclasses first."""
    if isinstance(exc, AuthRevoked):
        return Err(ErrorKind.AUTH_REVOKED, exc.message)
    if isinstance(exc, TransientAuthError):
        return Err(ErrorKind.TRANSIENT_AUTH, exc.message)
    if isinstance(exc, RateLimited):
        return Err(ErrorKind.RATE_LIMITED, exc.message, retry_after=exc.retry_after)
    if isinstance(exc, ProviderTimeout):
        return Err(ErrorKind.TIMEOUT, exc.message)
    if isinstance(exc, TransientProviderError):
        return Err(ErrorKind.PROVIDER_UNAVAILABLE, exc.message)
    if isinstance(exc, CursorInvalidated):
        return Err(ErrorKind.CURSOR_INVALID, exc.message)
    if isinstance(exc, ProviderProtocolError):
        return Err(ErrorKind.PROTOCOL, exc.message, resume_cursor=exc.resume_cursor)
    return Err(ErrorKind.INTERNAL, exc.message)
