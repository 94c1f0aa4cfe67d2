from unittest.mock import AsyncMock

import pytest

from app.features.mail_sync.domain import (
    AuthRevoked,
    CredentialMissing,
    Source,
    TokenGrant,
    TransientAuthError,
)
from app.features.mail_sync.repository.paths import CREDENTIAL_DOC_ID, settings_path
from app.features.mail_sync.services.token_manager import TokenManager
from app.security.encryption import decrypt_token
from conftest import seed_credential


@pytest.fixture
def oauth():
    client = AsyncMock()
    client.refresh_access_token.return_value = TokenGrant(
        access_token="fresh-access", expires_in=3600, scope="https://www.googleapis.com/auth/gmail.readonly"
    )
    return client


@pytest.fixture
def manager(store, oauth, sync_config):
    return TokenManager(store, oauth, sync_config)


def _credential(store, tenant_id="t1"):
    return store.docs(settings_path(tenant_id))[CREDENTIAL_DOC_ID]


@pytest.mark.asyncio
async def test_fresh_cached_token_is_returned_without_refresh(store, manager, oauth):
    await seed_credential(store, "t1")

    token = await manager.get_access_token("t1")

    assert token == "cached-access"
    oauth.refresh_access_token.assert_not_awaited()


@pytest.mark.asyncio
async def test_expiring_token_is_refreshed_and_cached(store, manager, oauth):
    await seed_credential(store, "t1", expires_in_seconds=30)
    refresh_before = _credential(store)["refreshToken"]

    token = await manager.get_access_token("t1")

    assert token == "fresh-access"
    oauth.refresh_access_token.assert_awaited_once_with("refresh-1")
    stored = _credential(store)
    assert decrypt_token(stored["accessToken"]) == "fresh-access"
    assert stored["refreshToken"] == refresh_before
    assert stored["accountEmail"] == "me@example.com"


@pytest.mark.asyncio
async def test_force_refresh_skips_cache(store, manager, oauth):
    await seed_credential(store, "t1")

    token = await manager.get_access_token("t1", force_refresh=True)

    assert token == "fresh-access"
    oauth.refresh_access_token.assert_awaited_once()


@pytest.mark.asyncio
async def test_missing_credential(manager):
    with pytest.raises(CredentialMissing):
        await manager.get_access_token("nobody")


@pytest.mark.asyncio
async def test_revoked_grant_propagates(store, manager, oauth):
    await seed_credential(store, "t1", access_token=None)
    oauth.refresh_access_token.side_effect = AuthRevoked("revoked", error_code="invalid_grant")

    with pytest.raises(AuthRevoked) as exc_info:
        await manager.get_access_token("t1")

    assert exc_info.value.error_code == "invalid_grant"
    assert "accessToken" not in _credential(store)


@pytest.mark.asyncio
async def test_transient_refresh_failure_propagates(store, manager, oauth):
    await seed_credential(store, "t1", access_token=None)
    oauth.refresh_access_token.side_effect = TransientAuthError("503")

    with pytest.raises(TransientAuthError):
        await manager.get_access_token("t1")


@pytest.mark.asyncio
async def test_calendar_requires_calendar_scope(store, manager):
    await seed_credential(store, "t1", scope="https://www.googleapis.com/auth/gmail.readonly")

    with pytest.raises(AuthRevoked) as exc_info:
        await manager.get_access_token("t1", source=Source.CALENDAR)

    assert exc_info.value.error_code == "insufficient_scope"
    assert await manager.can_sync("t1", Source.CALENDAR) is False
    assert await manager.can_sync("t1", Source.MAIL) is True


@pytest.mark.asyncio
async def test_unreadable_credential_is_revoked(store, manager):
    await store.merge_credential("t1", {"refreshToken": "not-ciphertext"})

    with pytest.raises(AuthRevoked) as exc_info:
        await manager.get_access_token("t1")

    assert exc_info.value.error_code == "credential_unreadable"


@pytest.mark.asyncio
async def test_save_grant_stores_encrypted_credential(store, manager):
    grant = TokenGrant(access_token="a-1", expires_in=3600, refresh_token="r-1", scope="scope-a")

    await manager.save_grant("t1", grant, account_email="Me@Example.com")

    stored = _credential(store)
    assert decrypt_token(stored["refreshToken"]) == "r-1"
    assert decrypt_token(stored["accessToken"]) == "a-1"
    assert stored["accountEmail"] == "me@example.com"
    assert await manager.account_addresses("t1") == frozenset({"me@example.com"})


@pytest.mark.asyncio
async def test_save_grant_requires_refresh_token(manager):
    with pytest.raises(AuthRevoked):
        await manager.save_grant("t1", TokenGrant(access_token="a-1"))
