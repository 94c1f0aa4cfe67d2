"""
Gmail provider client.

Full sync walks ``threads.list`` and fetches each thread in metadata
format, anchored at the mailbox's historyId read up front. Incremental
sync walks ``history.list`` from that anchor. Either way the caller
only ever sees ProviderRecords and an opaque cursor.
"""

from datetime import datetime, timedelta
from email.utils import parsedate_to_datetime

import httpx

from app.config import SyncConfig
from app.features.mail_sync.domain import (
    ChangePage,
    MessageRecord,
    ProviderProtocolError,
    RangePage,
    RecordDeleted,
    RecordKind,
    Source,
    ThreadChanged,
)
from app.infrastructure.observability.logging import get_logger

from .base import (
    CURSOR_MODE_DELTA,
    CURSOR_MODE_FULL,
    GoogleApiClient,
    ProviderCursor,
    epoch_millis_to_datetime,
    parse_participants,
)

logger = get_logger(__name__)

GMAIL_API_BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"
METADATA_HEADERS = ["From", "To", "Cc", "Subject", "Date"]
HISTORY_TYPES = ["messageAdded", "messageDeleted"]


def _parse_date_header(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None


def _latest_history_id(thread_id: str, messages: list[MessageRecord]) -> str | None:
    history_ids = [m.history_id for m in messages if m.history_id]
    if not history_ids:
        return None
    try:
        return max(history_ids, key=int)
    except ValueError as e:
        raise ProviderProtocolError(f"Thread {thread_id} has a non-numeric historyId") from e


class GmailClient(GoogleApiClient):
    source = Source.MAIL

    def __init__(self, http: httpx.AsyncClient, config: SyncConfig, base_url: str = GMAIL_API_BASE_URL):
        super().__init__(http, config)
        self._base_url = base_url

    # ------------------------------------------------------------------
    # ProviderClient contract
    # ------------------------------------------------------------------

    async def list_changes(
        self, access_token: str, cursor: str | None, page_size: int
    ) -> ChangePage:
        state = ProviderCursor.decode(cursor) or ProviderCursor(mode=CURSOR_MODE_FULL)
        if state.mode == CURSOR_MODE_FULL:
            return await self._full_sync_page(access_token, state, page_size)
        return await self._history_page(access_token, state, page_size)

    async def list_in_range(
        self,
        access_token: str,
        start: datetime,
        end: datetime,
        *,
        page_size: int,
        page_token: str | None = None,
    ) -> RangePage:
        data = await self._get_json(
            f"{self._base_url}/messages",
            access_token,
            "list_messages",
            params={
                "q": f"after:{int(start.timestamp())} before:{int(end.timestamp())}",
                "maxResults": page_size,
                "pageToken": page_token,
            },
        )
        messages = []
        for ref in data.get("messages", []):
            payload = await self._get_message(access_token, ref.get("id"))
            if payload is not None:
                messages.append(payload)
        return RangePage(
            records=self._group_by_thread(messages),
            next_page_token=data.get("nextPageToken"),
        )

    def default_window(self, now: datetime, days: int) -> tuple[datetime, datetime]:
        return now - timedelta(days=days), now

    async def account_address(self, access_token: str) -> str | None:
        profile = await self._get_json(f"{self._base_url}/profile", access_token, "get_profile")
        address = profile.get("emailAddress")
        return address.strip().lower() if isinstance(address, str) and address.strip() else None

    # ------------------------------------------------------------------
    # Full sync
    # ------------------------------------------------------------------

    async def _full_sync_page(
        self, access_token: str, state: ProviderCursor, page_size: int
    ) -> ChangePage:
        anchor = state.position
        if anchor is None:
            profile = await self._get_json(f"{self._base_url}/profile", access_token, "get_profile")
            anchor = profile.get("historyId")
            if not anchor:
                raise ProviderProtocolError("Mailbox profile did not include a historyId")
            logger.info("Gmail full sync started", history_id=anchor)

        data = await self._get_json(
            f"{self._base_url}/threads",
            access_token,
            "list_threads",
            params={"maxResults": page_size, "pageToken": state.page_token},
        )

        records = []
        for ref in data.get("threads", []):
            thread = await self._get_thread(access_token, ref.get("id"))
            if thread is not None:
                records.append(thread)

        next_page_token = data.get("nextPageToken")
        if next_page_token:
            next_state = ProviderCursor(CURSOR_MODE_FULL, str(anchor), next_page_token)
        else:
            # Listing exhausted: replay history from the anchor on the next run
            next_state = ProviderCursor(CURSOR_MODE_DELTA, str(anchor), None)

        return ChangePage(
            records=records, next_cursor=next_state.encode(), has_more=bool(next_page_token)
        )

    async def _get_thread(self, access_token: str, thread_id: str | None) -> ThreadChanged | None:
        if not thread_id:
            raise ProviderProtocolError("Thread listing entry without an id")
        response = await self._get(
            f"{self._base_url}/threads/{thread_id}",
            access_token,
            "get_thread",
            params={"format": "metadata", "metadataHeaders": METADATA_HEADERS},
        )
        if response.status_code == 404:
            # Deleted between listing and fetch
            logger.debug("Gmail thread vanished before fetch", thread_id=thread_id)
            return None
        data = self._handle_api_response(response, "get_thread")
        messages = [self._map_message(m) for m in data.get("messages", [])]
        return self._build_thread(thread_id, messages, data.get("historyId"))

    # ------------------------------------------------------------------
    # Incremental sync
    # ------------------------------------------------------------------

    async def _history_page(
        self, access_token: str, state: ProviderCursor, page_size: int
    ) -> ChangePage:
        response = await self._get(
            f"{self._base_url}/history",
            access_token,
            "list_history",
            params={
                "startHistoryId": state.position,
                "historyTypes": HISTORY_TYPES,
                "maxResults": page_size,
                "pageToken": state.page_token,
            },
        )
        # 404 means startHistoryId has aged out of Gmail's history window
        data = self._handle_api_response(response, "list_history", cursor_invalid_statuses=(404,))

        added: dict[str, str] = {}
        deleted: dict[str, str] = {}
        for entry in data.get("history", []):
            for item in entry.get("messagesAdded", []):
                message = item.get("message", {})
                if message.get("id"):
                    added[message["id"]] = message.get("threadId")
                    deleted.pop(message["id"], None)
            for item in entry.get("messagesDeleted", []):
                message = item.get("message", {})
                if message.get("id"):
                    deleted[message["id"]] = message.get("threadId")
                    added.pop(message["id"], None)

        messages = []
        for message_id in added:
            message = await self._get_message(access_token, message_id)
            if message is not None:
                messages.append(message)

        records = self._group_by_thread(messages)
        records.extend(
            RecordDeleted(kind=RecordKind.MESSAGE, external_id=message_id, parent_id=thread_id)
            for message_id, thread_id in deleted.items()
        )

        next_page_token = data.get("nextPageToken")
        if next_page_token:
            next_state = ProviderCursor(CURSOR_MODE_DELTA, state.position, next_page_token)
        else:
            latest = data.get("historyId") or state.position
            next_state = ProviderCursor(CURSOR_MODE_DELTA, str(latest), None)

        return ChangePage(
            records=records, next_cursor=next_state.encode(), has_more=bool(next_page_token)
        )

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    async def _get_message(
        self, access_token: str, message_id: str | None
    ) -> tuple[str, MessageRecord] | None:
        if not message_id:
            raise ProviderProtocolError("Message reference without an id")
        response = await self._get(
            f"{self._base_url}/messages/{message_id}",
            access_token,
            "get_message",
            params={"format": "metadata", "metadataHeaders": METADATA_HEADERS},
        )
        if response.status_code == 404:
            logger.debug("Gmail message vanished before fetch", message_id=message_id)
            return None
        data = self._handle_api_response(response, "get_message")
        thread_id = data.get("threadId")
        if not thread_id:
            raise ProviderProtocolError(f"Message {message_id} has no threadId")
        return thread_id, self._map_message(data)

    def _group_by_thread(self, messages: list[tuple[str, MessageRecord]]) -> list:
        grouped: dict[str, list[MessageRecord]] = {}
        for thread_id, message in messages:
            grouped.setdefault(thread_id, []).append(message)
        return [
            self._build_thread(thread_id, items, None, partial=True)
            for thread_id, items in grouped.items()
        ]

    @staticmethod
    def _build_thread(
        thread_id: str,
        messages: list[MessageRecord],
        history_id: str | None,
        *,
        partial: bool = False,
    ) -> ThreadChanged:
        if not history_id:
            history_id = _latest_history_id(thread_id, messages)
        return ThreadChanged(
            external_id=thread_id,
            messages=messages,
            history_id=history_id,
            partial=partial,
            subject=next((m.subject for m in messages if m.subject), None),
            snippet=messages[-1].snippet if messages else None,
            label_ids=sorted({label for m in messages for label in m.label_ids}),
        )

    @staticmethod
    def _map_message(data: dict) -> MessageRecord:
        try:
            headers = {
                header["name"].lower(): header.get("value", "")
                for header in data.get("payload", {}).get("headers", [])
            }
            sender = parse_participants([headers["from"]], "from") if "from" in headers else []
            recipients = parse_participants([headers.get("to", "")], "to") + parse_participants(
                [headers.get("cc", "")], "cc"
            )
            return MessageRecord(
                external_id=data["id"],
                sent_at=epoch_millis_to_datetime(data.get("internalDate"))
                or _parse_date_header(headers.get("date")),
                sender=sender[0] if sender else None,
                recipients=recipients,
                subject=headers.get("subject"),
                snippet=data.get("snippet"),
                label_ids=list(data.get("labelIds", [])),
                history_id=data.get("historyId"),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ProviderProtocolError(f"Unexpected Gmail message shape: {e}") from e
