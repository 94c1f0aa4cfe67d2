"""
Calendar client against a mocked Calendar REST API.
"""

import re
from datetime import UTC, datetime

import httpx
import pytest

from app.features.mail_sync.domain import (
    CursorInvalidated,
    EventChanged,
    ProviderProtocolError,
    RecordDeleted,
    RecordKind,
)
from app.features.mail_sync.providers.base import ProviderCursor
from app.features.mail_sync.providers.calendar_client import (
    CALENDAR_API_BASE_URL,
    GoogleCalendarClient,
)

EVENTS_URL = re.compile(re.escape(f"{CALENDAR_API_BASE_URL}/calendars/primary/events") + r"(\?.*)?$")

ONE_OFF = {
    "id": "evt-1",
    "etag": '"3181161784712000"',
    "status": "confirmed",
    "summary": "Intro call",
    "updated": "2024-06-01T08:00:00.000Z",
    "start": {"dateTime": "2024-06-10T09:00:00-04:00"},
    "end": {"dateTime": "2024-06-10T09:30:00-04:00"},
    "organizer": {"email": "me@example.com", "self": True},
    "attendees": [
        {"email": "me@example.com", "self": True, "responseStatus": "accepted"},
        {"email": "dana@example.com", "displayName": "Dana White"},
        {"email": "room-4@resource.calendar.google.com", "resource": True},
    ],
}

INSTANCE = {
    "id": "series-9_20240611T150000Z",
    "recurringEventId": "series-9",
    "status": "confirmed",
    "summary": "Weekly 1:1",
    "start": {"dateTime": "2024-06-11T15:00:00Z"},
    "end": {"dateTime": "2024-06-11T15:30:00Z"},
    "organizer": {"email": "erin@example.com"},
}

CANCELLED_INSTANCE = {
    "id": "series-9_20240618T150000Z",
    "recurringEventId": "series-9",
    "status": "cancelled",
}


@pytest.fixture
def calendar(sync_config):
    return GoogleCalendarClient(httpx.AsyncClient(), sync_config)


@pytest.mark.asyncio
async def test_full_listing_maps_events_and_returns_sync_token(calendar, httpx_mock):
    httpx_mock.add_response(
        url=EVENTS_URL,
        json={"items": [ONE_OFF, INSTANCE, CANCELLED_INSTANCE], "nextSyncToken": "sync-1"},
    )

    page = await calendar.list_changes("token", None, 100)

    assert page.has_more is False
    assert ProviderCursor.decode(page.next_cursor) == ProviderCursor("delta", "sync-1", None)

    one_off, instance, cancelled = page.records
    assert isinstance(one_off, EventChanged)
    assert one_off.external_id == "evt-1"
    assert one_off.recurring is False
    assert one_off.occurrence.start_at == datetime(2024, 6, 10, 13, 0, tzinfo=UTC)
    assert [(p.address, p.is_self) for p in one_off.attendees] == [
        ("me@example.com", True),
        ("dana@example.com", False),
    ]
    assert one_off.organizer.is_self is True

    assert instance.external_id == "series-9"
    assert instance.recurring is True
    assert instance.occurrence.external_id == "series-9_20240611T150000Z"

    assert cancelled == RecordDeleted(
        RecordKind.OCCURRENCE, "series-9_20240618T150000Z", parent_id="series-9"
    )

    params = httpx_mock.get_requests()[0].url.params
    assert params["singleEvents"] == "true"
    assert params["maxResults"] == "100"
    assert "timeMin" in params
    assert "syncToken" not in params


@pytest.mark.asyncio
async def test_intermediate_page_keeps_listing_mode(calendar, httpx_mock):
    httpx_mock.add_response(url=EVENTS_URL, json={"items": [], "nextPageToken": "page-2"})

    page = await calendar.list_changes("token", ProviderCursor("delta", "sync-1").encode(), 100)

    assert page.has_more is True
    assert ProviderCursor.decode(page.next_cursor) == ProviderCursor("delta", "sync-1", "page-2")
    assert httpx_mock.get_requests()[0].url.params["syncToken"] == "sync-1"


@pytest.mark.asyncio
async def test_cancelled_one_off_event_is_event_deletion(calendar, httpx_mock):
    httpx_mock.add_response(
        url=EVENTS_URL, json={"items": [{"id": "evt-7", "status": "cancelled"}], "nextSyncToken": "s2"}
    )

    page = await calendar.list_changes("token", ProviderCursor("delta", "s1").encode(), 100)

    assert page.records == [RecordDeleted(RecordKind.EVENT, "evt-7")]


@pytest.mark.asyncio
async def test_expired_sync_token(calendar, httpx_mock):
    httpx_mock.add_response(url=EVENTS_URL, status_code=410, json={"error": {"message": "Gone"}})

    with pytest.raises(CursorInvalidated):
        await calendar.list_changes("token", ProviderCursor("delta", "old").encode(), 100)


@pytest.mark.asyncio
async def test_final_page_without_sync_token_is_protocol_error(calendar, httpx_mock):
    httpx_mock.add_response(url=EVENTS_URL, json={"items": []})

    with pytest.raises(ProviderProtocolError):
        await calendar.list_changes("token", None, 100)


@pytest.mark.asyncio
async def test_malformed_event_is_protocol_error(calendar, httpx_mock):
    httpx_mock.add_response(url=EVENTS_URL, json={"items": [{"summary": "no id"}], "nextSyncToken": "s"})

    with pytest.raises(ProviderProtocolError):
        await calendar.list_changes("token", None, 100)


@pytest.mark.asyncio
async def test_list_in_range_bounds_the_query(calendar, httpx_mock):
    httpx_mock.add_response(url=EVENTS_URL, json={"items": [ONE_OFF]})
    start = datetime(2024, 6, 1, tzinfo=UTC)
    end = datetime(2024, 7, 1, tzinfo=UTC)

    page = await calendar.list_in_range("token", start, end, page_size=20, page_token="pt")

    assert page.next_page_token is None
    assert len(page.records) == 1
    params = httpx_mock.get_requests()[0].url.params
    assert params["timeMin"] == "2024-06-01T00:00:00.000+00:00"
    assert params["timeMax"] == "2024-07-01T00:00:00.000+00:00"
    assert params["orderBy"] == "startTime"
    assert params["pageToken"] == "pt"


def test_default_window_looks_ahead(calendar):
    now = datetime(2024, 6, 1, tzinfo=UTC)
    assert calendar.default_window(now, 14) == (now, datetime(2024, 6, 15, tzinfo=UTC))
