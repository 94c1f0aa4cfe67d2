"""
Consent URL, code exchange and token refresh against a mocked Google token endpoint.
"""

from dataclasses import replace
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from app.features.mail_sync.domain import AuthRevoked, TransientAuthError
from app.features.mail_sync.providers.oauth_client import (
    GOOGLE_AUTH_URL,
    GOOGLE_TOKEN_URL,
    SYNC_SCOPES,
    GoogleOAuthClient,
)


@pytest.fixture
def oauth(sync_config):
    return GoogleOAuthClient(httpx.AsyncClient(), sync_config)


@pytest.mark.asyncio
async def test_refresh_success(oauth, httpx_mock):
    httpx_mock.add_response(
        url=GOOGLE_TOKEN_URL,
        method="POST",
        json={
            "access_token": "ya29.new",
            "expires_in": 3599,
            "scope": "https://www.googleapis.com/auth/gmail.readonly",
            "token_type": "Bearer",
        },
    )

    grant = await oauth.refresh_access_token("refresh-1")

    assert grant.access_token == "ya29.new"
    assert grant.expires_in == 3599
    assert grant.refresh_token is None

    body = parse_qs(httpx_mock.get_requests()[0].content.decode())
    assert body["grant_type"] == ["refresh_token"]
    assert body["refresh_token"] == ["refresh-1"]
    assert body["client_id"] == ["client-id"]


@pytest.mark.asyncio
async def test_invalid_grant_is_revoked(oauth, httpx_mock):
    httpx_mock.add_response(
        url=GOOGLE_TOKEN_URL,
        method="POST",
        status_code=400,
        json={"error": "invalid_grant", "error_description": "Token has been expired or revoked."},
    )

    with pytest.raises(AuthRevoked) as exc_info:
        await oauth.refresh_access_token("refresh-1")

    assert exc_info.value.error_code == "invalid_grant"


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [429, 500, 503])
async def test_transient_statuses(oauth, httpx_mock, status_code):
    httpx_mock.add_response(url=GOOGLE_TOKEN_URL, method="POST", status_code=status_code, text="busy")

    with pytest.raises(TransientAuthError):
        await oauth.refresh_access_token("refresh-1")


@pytest.mark.asyncio
async def test_network_error_is_transient(oauth, httpx_mock):
    httpx_mock.add_exception(httpx.ConnectError("connection refused"), url=GOOGLE_TOKEN_URL)

    with pytest.raises(TransientAuthError):
        await oauth.refresh_access_token("refresh-1")


@pytest.mark.asyncio
async def test_missing_access_token_is_transient(oauth, httpx_mock):
    httpx_mock.add_response(url=GOOGLE_TOKEN_URL, method="POST", json={"expires_in": 3600})

    with pytest.raises(TransientAuthError):
        await oauth.refresh_access_token("refresh-1")


@pytest.mark.asyncio
async def test_unconfigured_client_is_revoked(sync_config):
    oauth = GoogleOAuthClient(httpx.AsyncClient(), replace(sync_config, client_secret=None))

    with pytest.raises(AuthRevoked) as exc_info:
        await oauth.refresh_access_token("refresh-1")

    assert exc_info.value.error_code == "invalid_client"


def test_authorization_url_requests_offline_read_access(oauth):
    url = oauth.authorization_url("state-abc")

    assert url.startswith(GOOGLE_AUTH_URL + "?")
    params = parse_qs(urlsplit(url).query)
    assert params["client_id"] == ["client-id"]
    assert params["redirect_uri"] == ["https://app.example.com/auth/google/done"]
    assert params["scope"] == [" ".join(SYNC_SCOPES)]
    assert params["state"] == ["state-abc"]
    assert params["access_type"] == ["offline"]
    assert params["prompt"] == ["consent"]


def test_authorization_url_needs_redirect_uri(sync_config):
    oauth = GoogleOAuthClient(httpx.AsyncClient(), replace(sync_config, redirect_uri=None))

    with pytest.raises(AuthRevoked) as exc_info:
        oauth.authorization_url("state-abc")

    assert exc_info.value.error_code == "invalid_client"


@pytest.mark.asyncio
async def test_exchange_code_returns_refresh_token(oauth, httpx_mock):
    httpx_mock.add_response(
        url=GOOGLE_TOKEN_URL,
        method="POST",
        json={
            "access_token": "ya29.first",
            "refresh_token": "1//refresh",
            "expires_in": 3599,
            "scope": " ".join(SYNC_SCOPES),
        },
    )

    grant = await oauth.exchange_code("4/code")

    assert grant.access_token == "ya29.first"
    assert grant.refresh_token == "1//refresh"
    body = parse_qs(httpx_mock.get_requests()[0].content.decode())
    assert body["grant_type"] == ["authorization_code"]
    assert body["code"] == ["4/code"]
    assert body["redirect_uri"] == ["https://app.example.com/auth/google/done"]


@pytest.mark.asyncio
async def test_rejected_code_is_revoked(oauth, httpx_mock):
    httpx_mock.add_response(
        url=GOOGLE_TOKEN_URL,
        method="POST",
        status_code=400,
        json={"error": "invalid_grant", "error_description": "Malformed auth code."},
    )

    with pytest.raises(AuthRevoked) as exc_info:
        await oauth.exchange_code("4/used")

    assert exc_info.value.error_code == "invalid_grant"
