"""
Sync Orchestrator: drives one tenant/source run end to end.

    load cursor -> mark running -> loop {
        token -> fetch page -> reconcile -> persist cursor -> job counters
    } -> complete | error

Provider and token failures are turned into Ok/Err values at one boundary
(_attempt) and all retry decisions live in _with_retry. Only this class
marks a job terminal.
"""

import asyncio
import functools
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime
from typing import Any

import structlog

from app.config import SyncConfig
from app.db.helpers import DatabaseError
from app.features.mail_sync.domain import (
    ChangePage,
    Err,
    ErrorKind,
    MailSyncError,
    Ok,
    PageStats,
    RangePage,
    Result,
    Source,
    SyncJob,
    SyncJobStateError,
    SyncType,
)
from app.features.mail_sync.domain.result import err_from_exception
from app.features.mail_sync.pipeline.reconciler import Reconciler
from app.features.mail_sync.providers.base import ProviderClient
from app.features.mail_sync.repository.document_store import DocumentStore
from app.infrastructure.observability.logging import get_logger

from .job_tracker import SyncJobTracker
from .token_manager import TokenManager

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


class SyncOrchestrator:
    def __init__(
        self,
        config: SyncConfig,
        store: DocumentStore,
        token_manager: TokenManager,
        providers: Mapping[Source, ProviderClient],
        reconciler: Reconciler,
        tracker: SyncJobTracker,
        *,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] | None = None,
    ):
        self._config = config
        self._store = store
        self._tokens = token_manager
        self._providers = dict(providers)
        self._reconciler = reconciler
        self._tracker = tracker
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def tracker(self) -> SyncJobTracker:
        return self._tracker

    async def sync(
        self, tenant_id: str, source: Source, sync_type: SyncType = SyncType.AUTO
    ) -> SyncJob:
        """
        Create a job and run it to a terminal state. When a run for the
        same tenant and source is already active, that job is returned as is.
        """
        job, created = await self._tracker.create_unless_active(tenant_id, source, sync_type)
        if not created:
            return job
        return await self.run(tenant_id, source, job.id, sync_type)

    async def run(
        self,
        tenant_id: str,
        source: Source,
        job_id: str,
        sync_type: SyncType = SyncType.AUTO,
    ) -> SyncJob:
        """Run an already created (pending) job to a terminal state."""
        with structlog.contextvars.bound_contextvars(
            tenant_id=tenant_id, source=str(source), job_id=job_id
        ):
            try:
                outcome = await self._execute(tenant_id, source, job_id, sync_type)
            except asyncio.CancelledError:
                await self._finish(tenant_id, job_id, Err(ErrorKind.CANCELLED, "interrupted"))
                raise
            except Exception as e:
                logger.exception("Sync run crashed", error_type=type(e).__name__)
                outcome = Err(ErrorKind.INTERNAL, f"{type(e).__name__}: {e}")
            await self._finish(tenant_id, job_id, outcome)

        job = await self._tracker.get(tenant_id, job_id)
        return job

    # ------------------------------------------------------------------
    # Run body
    # ------------------------------------------------------------------

    async def _execute(
        self, tenant_id: str, source: Source, job_id: str, sync_type: SyncType
    ) -> Result:
        provider = self._providers.get(source)
        if provider is None:
            return Err(ErrorKind.INTERNAL, f"No provider configured for {source}")

        try:
            await self._tracker.mark_running(tenant_id, job_id)
            own_addresses = await self._own_addresses(tenant_id, provider)

            if sync_type == SyncType.WINDOW:
                return await self._run_window(tenant_id, provider, job_id, own_addresses)
            return await self._run_changes(tenant_id, provider, job_id, sync_type, own_addresses)

        except DatabaseError as e:
            logger.error("Sync aborted by store failure", error=str(e), operation=e.operation)
            return Err(ErrorKind.STORE, str(e))

    async def _run_changes(
        self,
        tenant_id: str,
        provider: ProviderClient,
        job_id: str,
        sync_type: SyncType,
        own_addresses: frozenset[str],
    ) -> Result:
        start = await self._starting_cursor(tenant_id, provider.source, sync_type)
        if isinstance(start, Err):
            return start
        cursor = start.value
        resynced = False
        pages = 0

        while True:
            if await self._tracker.cancel_requested(tenant_id, job_id):
                return Err(ErrorKind.CANCELLED, "cancelled by request")

            fetched = await self._with_retry(
                functools.partial(self._fetch_changes, tenant_id, provider, cursor)
            )

            if isinstance(fetched, Err):
                if fetched.kind == ErrorKind.CURSOR_INVALID and not resynced and sync_type == SyncType.AUTO:
                    logger.warning("Cursor invalidated, restarting with full resync", error=fetched.message)
                    await self._store.clear_cursor(tenant_id, provider.source)
                    cursor, resynced = None, True
                    continue
                if (
                    fetched.kind == ErrorKind.PROTOCOL
                    and not provider.contiguous_cursor
                    and fetched.resume_cursor
                ):
                    await self._record_failed_page(tenant_id, job_id, fetched)
                    cursor = fetched.resume_cursor
                    continue
                return fetched

            page: ChangePage = fetched.value
            stats = await self._reconciler.apply_page(
                tenant_id, page.records, own_addresses=own_addresses
            )
            # Cursor moves only after every record in the page was attempted
            await self._store.set_cursor(tenant_id, provider.source, page.next_cursor)
            await self._tracker.record_page(tenant_id, job_id, stats)
            cursor = page.next_cursor
            pages += 1

            logger.info(
                "Sync page applied",
                page=pages,
                records=stats.processed,
                errors=stats.errors,
                has_more=page.has_more,
            )

            if not page.has_more:
                return Ok(pages)

    async def _run_window(
        self,
        tenant_id: str,
        provider: ProviderClient,
        job_id: str,
        own_addresses: frozenset[str],
    ) -> Result:
        """Reconcile a bounded time window. The stored cursor is untouched."""
        start, end = provider.default_window(self._clock(), self._config.calendar_window_days)
        page_token = None
        pages = 0

        while True:
            if await self._tracker.cancel_requested(tenant_id, job_id):
                return Err(ErrorKind.CANCELLED, "cancelled by request")

            fetched = await self._with_retry(
                functools.partial(self._fetch_range, tenant_id, provider, start, end, page_token)
            )
            if isinstance(fetched, Err):
                return fetched

            page: RangePage = fetched.value
            stats = await self._reconciler.apply_page(
                tenant_id, page.records, own_addresses=own_addresses
            )
            await self._tracker.record_page(tenant_id, job_id, stats)
            pages += 1

            if not page.next_page_token:
                return Ok(pages)
            page_token = page.next_page_token

    async def _own_addresses(self, tenant_id: str, provider: ProviderClient) -> frozenset[str]:
        known = await self._tokens.account_addresses(tenant_id)
        if known:
            return known

        fetched = await self._attempt(
            functools.partial(self._fetch_account_address, tenant_id, provider), False
        )
        if isinstance(fetched, Err):
            # Not retried here; the page fetch that follows runs the retry loop
            logger.warning("Account address unavailable", error=fetched.describe())
            return known
        if not fetched.value:
            return known
        return await self._tokens.remember_account_address(tenant_id, fetched.value)

    async def _starting_cursor(self, tenant_id: str, source: Source, sync_type: SyncType) -> Result:
        if sync_type == SyncType.INITIAL:
            await self._store.clear_cursor(tenant_id, source)
            return Ok(None)

        stored = await self._store.get_cursor(tenant_id, source)
        if stored is None or stored.value is None:
            if sync_type == SyncType.INCREMENTAL:
                return Err(ErrorKind.CURSOR_INVALID, "no stored cursor; run an initial sync first")
            return Ok(None)

        max_age = self._config.incremental_max_age_days
        if sync_type == SyncType.AUTO and stored.older_than(self._clock(), max_age):
            logger.info("Stored cursor is stale, running full resync", max_age_days=max_age)
            return Ok(None)

        return Ok(stored.value)

    async def _fetch_changes(
        self, tenant_id: str, provider: ProviderClient, cursor: str | None, force_refresh: bool
    ) -> ChangePage:
        token = await self._tokens.get_access_token(
            tenant_id, source=provider.source, force_refresh=force_refresh
        )
        return await provider.list_changes(token, cursor, self._config.page_size)

    async def _fetch_account_address(
        self, tenant_id: str, provider: ProviderClient, force_refresh: bool
    ) -> str | None:
        token = await self._tokens.get_access_token(
            tenant_id, source=provider.source, force_refresh=force_refresh
        )
        return await provider.account_address(token)

    async def _fetch_range(
        self,
        tenant_id: str,
        provider: ProviderClient,
        start: datetime,
        end: datetime,
        page_token: str | None,
        force_refresh: bool,
    ) -> RangePage:
        token = await self._tokens.get_access_token(
            tenant_id, source=provider.source, force_refresh=force_refresh
        )
        return await provider.list_in_range(
            token, start, end, page_size=self._config.page_size, page_token=page_token
        )

    # ------------------------------------------------------------------
    # Retry state machine
    # ------------------------------------------------------------------

    async def _attempt(self, operation: Callable[[bool], Awaitable[Any]], force_refresh: bool) -> Result:
        try:
            return Ok(await operation(force_refresh))
        except MailSyncError as e:
            return err_from_exception(e)
        except DatabaseError as e:
            return Err(ErrorKind.STORE, str(e))

    async def _with_retry(self, operation: Callable[[bool], Awaitable[Any]]) -> Result:
        """
        Run ``operation`` until it succeeds, fails permanently, or the
        attempt ceiling is reached (then RETRY_EXHAUSTED).

        ``operation`` receives ``force_refresh``, set after the provider
        rejected an access token.
        """
        ceiling = max(1, self._config.retry_ceiling)
        force_refresh = False

        for attempt in range(1, ceiling + 1):
            result = await self._attempt(operation, force_refresh)
            if isinstance(result, Ok) or not result.retryable:
                return result

            if attempt == ceiling:
                logger.error("Retry ceiling reached", attempts=attempt, last_error=result.describe())
                return Err(
                    ErrorKind.RETRY_EXHAUSTED,
                    f"gave up after {attempt} attempts; last error {result.describe()}",
                )

            delay = self.backoff_delay(attempt, result.retry_after)
            force_refresh = result.kind == ErrorKind.TRANSIENT_AUTH
            logger.warning(
                "Retrying after transient failure",
                attempt=attempt,
                delay_seconds=delay,
                error_kind=str(result.kind),
                error=result.message,
            )
            await self._sleep(delay)

        raise AssertionError("unreachable")

    def backoff_delay(self, attempt: int, retry_after: float | None = None) -> float:
        """Exponential backoff, capped, never shorter than the provider asked."""
        base = self._config.backoff_base_seconds * (2 ** (attempt - 1))
        delay = min(self._config.backoff_max_seconds, base)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return delay

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    async def _record_failed_page(self, tenant_id: str, job_id: str, err: Err) -> None:
        stats = PageStats()
        stats.record_error(err.describe())
        await self._tracker.record_page(tenant_id, job_id, stats)

    async def _finish(self, tenant_id: str, job_id: str, outcome: Result) -> None:
        try:
            if isinstance(outcome, Ok):
                await self._tracker.mark_complete(tenant_id, job_id)
            else:
                await self._tracker.mark_error(tenant_id, job_id, outcome.describe())
        except SyncJobStateError as e:
            logger.error("Sync job could not be finalized", error=str(e))
        except DatabaseError as e:
            logger.error("Sync job finalization failed", error=str(e), outcome=type(outcome).__name__)
