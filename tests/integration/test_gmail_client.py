"""
Gmail client against a mocked Gmail REST API.
"""

import re
from datetime import UTC, datetime

import httpx
import pytest

from app.features.mail_sync.domain import (
    CursorInvalidated,
    ProviderProtocolError,
    ProviderTimeout,
    RateLimited,
    RecordDeleted,
    RecordKind,
    ThreadChanged,
    TransientAuthError,
    TransientProviderError,
)
from app.features.mail_sync.providers.base import ProviderCursor
from app.features.mail_sync.providers.gmail_client import GMAIL_API_BASE_URL, GmailClient

BASE = re.escape(GMAIL_API_BASE_URL)
PROFILE_URL = re.compile(rf"{BASE}/profile$")
THREADS_URL = re.compile(rf"{BASE}/threads(\?.*)?$")
HISTORY_URL = re.compile(rf"{BASE}/history\?.*")
MESSAGES_URL = re.compile(rf"{BASE}/messages\?.*")


def thread_url(thread_id):
    return re.compile(rf"{BASE}/threads/{thread_id}\?.*")


def message_url(message_id):
    return re.compile(rf"{BASE}/messages/{message_id}\?.*")


def message_payload(message_id, thread_id, sender="Alice Smith <alice@example.com>"):
    return {
        "id": message_id,
        "threadId": thread_id,
        "historyId": "550",
        "internalDate": "1714560000000",
        "labelIds": ["INBOX", "UNREAD"],
        "snippet": "Quick question",
        "payload": {
            "headers": [
                {"name": "From", "value": sender},
                {"name": "To", "value": "me@example.com, Bob <bob@example.com>"},
                {"name": "Cc", "value": "carol@example.com"},
                {"name": "Subject", "value": "Hello"},
            ]
        },
    }


@pytest.fixture
def http():
    return httpx.AsyncClient()


@pytest.fixture
def gmail(http, sync_config):
    return GmailClient(http, sync_config)


@pytest.mark.asyncio
async def test_full_sync_first_page_anchors_history(gmail, httpx_mock):
    httpx_mock.add_response(url=PROFILE_URL, json={"emailAddress": "me@example.com", "historyId": "500"})
    httpx_mock.add_response(
        url=THREADS_URL, json={"threads": [{"id": "t1"}, {"id": "gone"}], "nextPageToken": "p2"}
    )
    httpx_mock.add_response(
        url=thread_url("t1"), json={"id": "t1", "historyId": "520", "messages": [message_payload("m1", "t1")]}
    )
    httpx_mock.add_response(url=thread_url("gone"), status_code=404, json={"error": {"message": "Not Found"}})

    page = await gmail.list_changes("token", None, 50)

    assert page.has_more is True
    assert ProviderCursor.decode(page.next_cursor) == ProviderCursor("full", "500", "p2")
    assert len(page.records) == 1
    record = page.records[0]
    assert isinstance(record, ThreadChanged)
    assert record.external_id == "t1"
    assert record.history_id == "520"
    assert record.subject == "Hello"
    assert record.label_ids == ["INBOX", "UNREAD"]
    assert record.partial is False

    message = record.messages[0]
    assert message.sender.address == "alice@example.com"
    assert message.sender.display_name == "Alice Smith"
    assert [(p.address, p.role) for p in message.recipients] == [
        ("me@example.com", "to"),
        ("bob@example.com", "to"),
        ("carol@example.com", "cc"),
    ]
    assert message.sent_at == datetime.fromtimestamp(1714560000, UTC)

    threads_request = httpx_mock.get_requests(url=THREADS_URL)[0]
    assert threads_request.headers["Authorization"] == "Bearer token"
    assert threads_request.url.params["maxResults"] == "50"


@pytest.mark.asyncio
async def test_full_sync_last_page_switches_to_history(gmail, httpx_mock):
    httpx_mock.add_response(url=THREADS_URL, json={"resultSizeEstimate": 0})

    cursor = ProviderCursor("full", "500", "p2").encode()
    page = await gmail.list_changes("token", cursor, 50)

    assert page.has_more is False
    assert page.records == []
    assert ProviderCursor.decode(page.next_cursor) == ProviderCursor("delta", "500", None)
    assert httpx_mock.get_requests()[0].url.params["pageToken"] == "p2"


@pytest.mark.asyncio
async def test_history_page_maps_additions_and_deletions(gmail, httpx_mock):
    httpx_mock.add_response(
        url=HISTORY_URL,
        json={
            "historyId": "600",
            "history": [
                {"messagesAdded": [{"message": {"id": "m1", "threadId": "t1"}}]},
                {"messagesDeleted": [{"message": {"id": "m9", "threadId": "t9"}}]},
            ],
        },
    )
    httpx_mock.add_response(url=message_url("m1"), json=message_payload("m1", "t1"))

    page = await gmail.list_changes("token", ProviderCursor("delta", "500").encode(), 50)

    assert page.has_more is False
    assert ProviderCursor.decode(page.next_cursor) == ProviderCursor("delta", "600", None)
    thread, deletion = page.records
    assert isinstance(thread, ThreadChanged) and thread.external_id == "t1"
    assert thread.partial is True
    assert deletion == RecordDeleted(RecordKind.MESSAGE, "m9", parent_id="t9")

    history_request = httpx_mock.get_requests(url=HISTORY_URL)[0]
    assert history_request.url.params["startHistoryId"] == "500"
    assert history_request.url.params.get_list("historyTypes") == ["messageAdded", "messageDeleted"]


@pytest.mark.asyncio
async def test_expired_history_id_invalidates_cursor(gmail, httpx_mock):
    httpx_mock.add_response(url=HISTORY_URL, status_code=404, json={"error": {"message": "Requested entity was not found."}})

    with pytest.raises(CursorInvalidated):
        await gmail.list_changes("token", ProviderCursor("delta", "1").encode(), 50)


@pytest.mark.asyncio
async def test_unreadable_cursor_invalidates(gmail):
    with pytest.raises(CursorInvalidated):
        await gmail.list_changes("token", "not json", 50)


@pytest.mark.asyncio
async def test_rate_limit_carries_retry_after(gmail, httpx_mock):
    httpx_mock.add_response(url=PROFILE_URL, status_code=429, headers={"Retry-After": "7"})

    with pytest.raises(RateLimited) as exc_info:
        await gmail.list_changes("token", None, 50)

    assert exc_info.value.retry_after == 7.0


@pytest.mark.asyncio
async def test_quota_403_is_rate_limited(gmail, httpx_mock):
    httpx_mock.add_response(
        url=PROFILE_URL,
        status_code=403,
        json={"error": {"message": "Quota", "errors": [{"reason": "userRateLimitExceeded"}]}},
    )

    with pytest.raises(RateLimited):
        await gmail.list_changes("token", None, 50)


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code, expected", [(401, TransientAuthError), (503, TransientProviderError)])
async def test_status_mapping(gmail, httpx_mock, status_code, expected):
    httpx_mock.add_response(url=PROFILE_URL, status_code=status_code, json={"error": {"message": "x"}})

    with pytest.raises(expected):
        await gmail.list_changes("token", None, 50)


@pytest.mark.asyncio
async def test_timeout_is_mapped(gmail, httpx_mock):
    httpx_mock.add_exception(httpx.ReadTimeout("timed out"), url=PROFILE_URL)

    with pytest.raises(ProviderTimeout):
        await gmail.list_changes("token", None, 50)


@pytest.mark.asyncio
async def test_list_in_range_groups_messages_by_thread(gmail, httpx_mock):
    httpx_mock.add_response(
        url=MESSAGES_URL,
        json={"messages": [{"id": "m1"}, {"id": "m2"}], "nextPageToken": "n2"},
    )
    httpx_mock.add_response(url=message_url("m1"), json=message_payload("m1", "t1"))
    httpx_mock.add_response(url=message_url("m2"), json=message_payload("m2", "t1", sender="bob@example.com"))

    start = datetime(2024, 5, 1, tzinfo=UTC)
    end = datetime(2024, 5, 31, tzinfo=UTC)
    page = await gmail.list_in_range("token", start, end, page_size=25)

    assert page.next_page_token == "n2"
    assert len(page.records) == 1
    assert [m.external_id for m in page.records[0].messages] == ["m1", "m2"]
    query = httpx_mock.get_requests(url=MESSAGES_URL)[0].url.params["q"]
    assert query == f"after:{int(start.timestamp())} before:{int(end.timestamp())}"


@pytest.mark.asyncio
async def test_non_numeric_history_id_is_a_protocol_error(gmail, httpx_mock):
    httpx_mock.add_response(
        url=HISTORY_URL,
        json={"historyId": "600", "history": [{"messagesAdded": [{"message": {"id": "m1", "threadId": "t1"}}]}]},
    )
    payload = message_payload("m1", "t1")
    payload["historyId"] = "not-a-number"
    httpx_mock.add_response(url=message_url("m1"), json=payload)

    with pytest.raises(ProviderProtocolError):
        await gmail.list_changes("token", ProviderCursor("delta", "500").encode(), 50)


@pytest.mark.asyncio
async def test_account_address_comes_from_profile(gmail, httpx_mock):
    httpx_mock.add_response(url=PROFILE_URL, json={"emailAddress": " Me@Example.com ", "historyId": "500"})

    assert await gmail.account_address("token") == "me@example.com"
