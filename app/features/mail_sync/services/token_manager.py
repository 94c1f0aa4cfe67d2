"""
Token Manager for per-tenant OAuth credentials.

Reads the stored credential, hands back the cached access token while it
is comfortably unexpired, and otherwise refreshes it and writes the new
token back with a merge. The refresh token itself is only ever written
by save_grant (a new authorization).
"""

from collections.abc import Callable
from datetime import UTC, datetime

from app.config import SyncConfig
from app.features.mail_sync.domain import (
    AuthRevoked,
    Credential,
    CredentialMissing,
    Source,
    TokenGrant,
)
from app.features.mail_sync.domain.models import parse_timestamp
from app.features.mail_sync.domain.records import to_iso
from app.features.mail_sync.providers.oauth_client import GoogleOAuthClient
from app.features.mail_sync.repository.document_store import DocumentStore
from app.infrastructure.observability.logging import get_logger
from app.security.encryption import EncryptionError, decrypt_token, encrypt_token

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TokenManager:
    """Obtains access tokens for a tenant from its stored credential."""

    def __init__(
        self,
        store: DocumentStore,
        oauth_client: GoogleOAuthClient,
        config: SyncConfig,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._oauth = oauth_client
        self._margin_seconds = config.token_expiry_margin_seconds
        self._clock = clock

    async def get_access_token(
        self,
        tenant_id: str,
        *,
        source: Source | None = None,
        force_refresh: bool = False,
    ) -> str:
        """
        Return a usable access token for the tenant.

        Args:
            tenant_id: Tenant namespace
            source: When calendar, the grant must include a calendar scope
            force_refresh: Skip the cached token (provider rejected it)

        Raises:
            CredentialMissing: No credential stored
            AuthRevoked: Grant revoked, unreadable, or missing the scope
            TransientAuthError: Token endpoint temporarily unavailable
        """
        credential = await self._load_credential(tenant_id)

        if source == Source.CALENDAR and not credential.has_calendar_scope():
            raise AuthRevoked("Calendar access not granted", error_code="insufficient_scope")

        now = self._clock()
        if not force_refresh and credential.is_fresh(now, self._margin_seconds):
            return credential.access_token

        grant = await self._oauth.refresh_access_token(credential.refresh_token)
        expires_at = grant.expires_at(self._clock())

        # Merge only the cache fields; a rotated refresh token is ignored
        fields = {
            "accessToken": encrypt_token(grant.access_token),
            "expiresAt": to_iso(expires_at),
            "updatedAt": to_iso(self._clock()),
        }
        if grant.scope:
            fields["scope"] = grant.scope
        await self._store.merge_credential(tenant_id, fields)

        logger.info(
            "Access token refreshed",
            tenant_id=tenant_id,
            forced=force_refresh,
            expires_at=to_iso(expires_at),
        )
        return grant.access_token

    async def save_grant(
        self, tenant_id: str, grant: TokenGrant, account_email: str | None = None
    ) -> None:
        """Store a credential produced by a new OAuth authorization."""
        if not grant.refresh_token:
            raise AuthRevoked("Grant did not include a refresh token", error_code="no_refresh_token")

        fields = {
            "refreshToken": encrypt_token(grant.refresh_token),
            "accessToken": encrypt_token(grant.access_token),
            "expiresAt": to_iso(grant.expires_at(self._clock())),
            "scope": grant.scope,
            "updatedAt": to_iso(self._clock()),
        }
        if account_email:
            fields["accountEmail"] = account_email.strip().lower()

        await self._store.merge_credential(tenant_id, fields)
        logger.info("OAuth grant stored", tenant_id=tenant_id, scope=grant.scope)

    async def account_addresses(self, tenant_id: str) -> frozenset[str]:
        """Addresses that belong to the tenant itself."""
        doc = await self._store.get_credential(tenant_id)
        if not doc or not doc.get("accountEmail"):
            return frozenset()
        return frozenset({doc["accountEmail"].strip().lower()})

    async def remember_account_address(self, tenant_id: str, address: str) -> frozenset[str]:
        """Record the account address learned from the provider on the credential."""
        address = address.strip().lower()
        await self._store.merge_credential(
            tenant_id, {"accountEmail": address, "updatedAt": to_iso(self._clock())}
        )
        logger.info("Account address recorded", tenant_id=tenant_id)
        return frozenset({address})

    async def can_sync(self, tenant_id: str, source: Source) -> bool:
        """Whether the stored grant covers the source at all."""
        doc = await self._store.get_credential(tenant_id)
        if not doc or not doc.get("refreshToken"):
            return False
        if source == Source.CALENDAR:
            return any("calendar" in scope for scope in doc.get("scope", "").split())
        return True

    async def _load_credential(self, tenant_id: str) -> Credential:
        doc = await self._store.get_credential(tenant_id)
        if not doc or not doc.get("refreshToken"):
            raise CredentialMissing("No linked account for tenant; authorization required")

        try:
            return Credential(
                refresh_token=decrypt_token(doc["refreshToken"]),
                access_token=decrypt_token(doc["accessToken"]) if doc.get("accessToken") else None,
                expires_at=parse_timestamp(doc.get("expiresAt")),
                scope=doc.get("scope") or "",
                account_email=doc.get("accountEmail"),
            )
        except EncryptionError as e:
            logger.error("Stored credential could not be decrypted", tenant_id=tenant_id)
            raise AuthRevoked("Stored credential is unreadable", error_code="credential_unreadable") from e
