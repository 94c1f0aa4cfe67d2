"""
Google Calendar provider client.

A full listing of the primary calendar (expanded into single events,
bounded below by the sync window) yields a syncToken; later runs page
through changes since that token. Cancelled events come back as
deletions.
"""

from datetime import UTC, datetime, timedelta

import httpx

from app.config import SyncConfig
from app.features.mail_sync.domain import (
    ChangePage,
    EventChanged,
    OccurrenceRecord,
    Participant,
    ProviderProtocolError,
    ProviderRecord,
    RangePage,
    RecordDeleted,
    RecordKind,
    Source,
)
from app.features.mail_sync.domain.records import to_iso
from app.infrastructure.observability.logging import get_logger

from .base import (
    CURSOR_MODE_DELTA,
    CURSOR_MODE_FULL,
    GoogleApiClient,
    ProviderCursor,
    parse_google_datetime,
)

logger = get_logger(__name__)

CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
CALENDAR_PRIMARY = "primary"


class GoogleCalendarClient(GoogleApiClient):
    source = Source.CALENDAR

    def __init__(
        self,
        http: httpx.AsyncClient,
        config: SyncConfig,
        base_url: str = CALENDAR_API_BASE_URL,
        calendar_id: str = CALENDAR_PRIMARY,
    ):
        super().__init__(http, config)
        self._events_url = f"{base_url}/calendars/{calendar_id}/events"

    async def list_changes(
        self, access_token: str, cursor: str | None, page_size: int
    ) -> ChangePage:
        state = ProviderCursor.decode(cursor)
        if state is None:
            lower_bound = datetime.now(UTC) - timedelta(days=self._config.calendar_window_days)
            state = ProviderCursor(CURSOR_MODE_FULL, to_iso(lower_bound), None)

        params = {"maxResults": page_size, "singleEvents": "true", "pageToken": state.page_token}
        if state.mode == CURSOR_MODE_FULL:
            params["timeMin"] = state.position
        else:
            params["syncToken"] = state.position

        response = await self._get(self._events_url, access_token, "list_events", params=params)
        # 410 Gone: the sync token expired and a full sync is required
        data = self._handle_api_response(response, "list_events", cursor_invalid_statuses=(410,))

        records = [self._map_event(item) for item in data.get("items", [])]

        next_page_token = data.get("nextPageToken")
        if next_page_token:
            next_state = ProviderCursor(state.mode, state.position, next_page_token)
        else:
            sync_token = data.get("nextSyncToken")
            if not sync_token:
                raise ProviderProtocolError("Final events page did not include a nextSyncToken")
            next_state = ProviderCursor(CURSOR_MODE_DELTA, sync_token, None)

        return ChangePage(
            records=records, next_cursor=next_state.encode(), has_more=bool(next_page_token)
        )

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
            self._events_url,
            access_token,
            "list_events_in_range",
            params={
                "timeMin": to_iso(start),
                "timeMax": to_iso(end),
                "singleEvents": "true",
                "orderBy": "startTime",
                "maxResults": page_size,
                "pageToken": page_token,
            },
        )
        return RangePage(
            records=[self._map_event(item) for item in data.get("items", [])],
            next_page_token=data.get("nextPageToken"),
        )

    def default_window(self, now: datetime, days: int) -> tuple[datetime, datetime]:
        return now, now + timedelta(days=days)

    @staticmethod
    def _map_event(item: dict) -> ProviderRecord:
        try:
            event_id = item["id"]
            series_id = item.get("recurringEventId")

            if item.get("status") == "cancelled":
                if series_id:
                    return RecordDeleted(RecordKind.OCCURRENCE, event_id, parent_id=series_id)
                return RecordDeleted(RecordKind.EVENT, event_id)

            start = item.get("start", {})
            end = item.get("end", {})
            start_at = parse_google_datetime(start.get("dateTime") or start.get("date"))
            end_at = parse_google_datetime(end.get("dateTime") or end.get("date"))

            organizer = None
            if item.get("organizer", {}).get("email"):
                organizer = Participant(
                    address=item["organizer"]["email"],
                    display_name=item["organizer"].get("displayName"),
                    role="organizer",
                    is_self=bool(item["organizer"].get("self")),
                )

            attendees = [
                Participant(
                    address=attendee["email"],
                    display_name=attendee.get("displayName"),
                    role="attendee",
                    is_self=bool(attendee.get("self")),
                )
                for attendee in item.get("attendees", [])
                if attendee.get("email") and not attendee.get("resource")
            ]

            return EventChanged(
                external_id=series_id or event_id,
                occurrence=OccurrenceRecord(
                    external_id=event_id,
                    start_at=start_at,
                    end_at=end_at,
                    status=item.get("status"),
                    updated_at=parse_google_datetime(item.get("updated")),
                ),
                etag=item.get("etag"),
                summary=item.get("summary"),
                status=item.get("status"),
                organizer=organizer,
                attendees=attendees,
                recurring=series_id is not None,
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ProviderProtocolError(f"Unexpected Calendar event shape: {e}") from e
