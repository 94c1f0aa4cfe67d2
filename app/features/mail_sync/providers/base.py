"""
Shared plumbing for the Google provider clients.

Provides the opaque cursor format, the provider contract used by the
orchestrator, and one place that maps HTTP outcomes onto the pipeline's
error taxonomy. Clients make a single attempt per call; retries belong
to the orchestrator.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from email.utils import getaddresses, parsedate_to_datetime
from typing import Any

import httpx

from app.config import SyncConfig
from app.features.mail_sync.domain import (
    ChangePage,
    CursorInvalidated,
    Participant,
    ProviderProtocolError,
    ProviderTimeout,
    RangePage,
    RateLimited,
    Source,
    TransientAuthError,
    TransientProviderError,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}

CURSOR_MODE_FULL = "full"
CURSOR_MODE_DELTA = "delta"


def create_http_client(config: SyncConfig) -> httpx.AsyncClient:
    """Create the async HTTP client shared by every provider client."""
    timeout = httpx.Timeout(config.request_timeout_seconds)
    limits = httpx.Limits(max_keepalive_connections=20, max_connections=50)
    return httpx.AsyncClient(timeout=timeout, limits=limits)


@dataclass(slots=True, frozen=True)
class ProviderCursor:
    """
    Decoded form of the opaque cursor string.

    mode:       "full" while walking the complete listing, "delta" afterwards
    position:   provider position (Gmail historyId, Calendar syncToken, or
                the full listing's time bound)
    page_token: provider page token inside the current listing
    """

    mode: str = CURSOR_MODE_FULL
    position: str | None = None
    page_token: str | None = None

    def encode(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"), sort_keys=True)

    @classmethod
    def decode(cls, raw: str | None) -> "ProviderCursor | None":
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            cursor = cls(**data)
        except (ValueError, TypeError) as e:
            raise CursorInvalidated(f"Unreadable cursor: {e}") from e
        if cursor.mode not in (CURSOR_MODE_FULL, CURSOR_MODE_DELTA):
            raise CursorInvalidated(f"Unknown cursor mode: {cursor.mode}")
        if cursor.mode == CURSOR_MODE_DELTA and not cursor.position:
            raise CursorInvalidated("Delta cursor without a position")
        return cursor


class ProviderClient(ABC):
    """Contract the orchestrator drives for one external source."""

    source: Source
    # Changes are only meaningful relative to the previous cursor; a page
    # that cannot be read cannot be skipped.
    contiguous_cursor: bool = True

    @abstractmethod
    async def list_changes(
        self, access_token: str, cursor: str | None, page_size: int
    ) -> ChangePage: ...

    @abstractmethod
    async def list_in_range(
        self,
        access_token: str,
        start: datetime,
        end: datetime,
        *,
        page_size: int,
        page_token: str | None = None,
    ) -> RangePage: ...

    @abstractmethod
    def default_window(self, now: datetime, days: int) -> tuple[datetime, datetime]:
        """Time range reconciled by a window sync."""

    async def account_address(self, access_token: str) -> str | None:
        """The address of the account the token belongs to, when the source exposes one."""
        return None


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Retry-After is either delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    now = now or datetime.now(UTC)
    return max((when - now).total_seconds(), 0.0)


def parse_participants(values: list[str], role: str) -> list[Participant]:
    """Parse RFC 5322 address headers; entries without an address are dropped."""
    participants = []
    for name, address in getaddresses(values):
        if address:
            participants.append(Participant(address=address, display_name=name or None, role=role))
    return participants


def parse_google_datetime(value: Any) -> datetime | None:
    """RFC 3339 timestamp or all-day date from a Google payload."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def epoch_millis_to_datetime(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime(1970, 1, 1, tzinfo=UTC) + timedelta(milliseconds=int(value))


class GoogleApiClient(ProviderClient):
    """Common request and error handling for Google REST APIs."""

    def __init__(self, http: httpx.AsyncClient, config: SyncConfig):
        self._http = http
        self._config = config

    def _get_auth_headers(self, access_token: str) -> dict:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }

    async def _get(
        self,
        url: str,
        access_token: str,
        operation: str,
        params: dict | None = None,
    ) -> httpx.Response:
        try:
            return await self._http.get(
                url,
                params={k: v for k, v in (params or {}).items() if v is not None},
                headers=self._get_auth_headers(access_token),
                timeout=self._config.request_timeout_seconds,
            )
        except httpx.TimeoutException as e:
            logger.warning(f"{self.source} {operation} timed out", error=str(e))
            raise ProviderTimeout(f"{operation} timed out") from e
        except httpx.RequestError as e:
            logger.warning(
                f"{self.source} {operation} request error",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise TransientProviderError(f"{operation} request failed: {e}") from e

    async def _get_json(
        self, url: str, access_token: str, operation: str, params: dict | None = None
    ) -> dict:
        response = await self._get(url, access_token, operation, params=params)
        return self._handle_api_response(response, operation)

    def _handle_api_response(
        self,
        response: httpx.Response,
        operation: str,
        *,
        cursor_invalid_statuses: tuple[int, ...] = (),
    ) -> dict:
        """
        Parse a successful response or raise the mapped pipeline error.

        Raises:
            RateLimited: 429, or 403 with a rate limit reason
            TransientAuthError: 401, token rejected
            TransientProviderError: 5xx
            CursorInvalidated: one of ``cursor_invalid_statuses``
            ProviderProtocolError: any other failure or a malformed body
        """
        status_code = response.status_code

        if response.is_success:
            try:
                data = response.json() if response.content else {}
            except ValueError as e:
                raise ProviderProtocolError(
                    f"{operation} returned malformed JSON", status_code=status_code
                ) from e
            if not isinstance(data, dict):
                raise ProviderProtocolError(
                    f"{operation} returned an unexpected payload", status_code=status_code
                )
            return data

        error_message, reasons = self._extract_error(response)
        logger.warning(
            f"{self.source} {operation} failed",
            status_code=status_code,
            error_message=error_message,
            reasons=sorted(reasons) or None,
        )

        if status_code in cursor_invalid_statuses:
            raise CursorInvalidated(f"{operation}: cursor rejected (HTTP {status_code})")
        if status_code == 429 or (status_code == 403 and reasons & RATE_LIMIT_REASONS):
            raise RateLimited(
                f"{operation} rate limited",
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        if status_code == 401:
            raise TransientAuthError(f"{operation}: access token rejected", error_code="token_rejected")
        if status_code >= 500:
            raise TransientProviderError(
                f"{operation} failed with HTTP {status_code}", status_code=status_code
            )
        raise ProviderProtocolError(
            f"{operation} failed with HTTP {status_code}: {error_message}",
            status_code=status_code,
        )

    @staticmethod
    def _extract_error(response: httpx.Response) -> tuple[str, set[str]]:
        try:
            error_info = (response.json() or {}).get("error", {})
        except ValueError:
            return (response.text[:200] if response.text else "no body"), set()
        if not isinstance(error_info, dict):
            return str(error_info), set()
        reasons = {
            item.get("reason")
            for item in error_info.get("errors", [])
            if isinstance(item, dict) and item.get("reason")
        }
        return error_info.get("message", "unknown error"), reasons
