"""
Links a tenant's Google account: consent URL out, authorization code in.

The callback exchanges the code, looks up the mailbox address with the
new access token and stores the grant through the TokenManager, which
is the only writer of refresh tokens.
"""

from dataclasses import dataclass

import httpx

from app.config import SyncConfig
from app.features.mail_sync.domain import AuthRevoked, MailSyncError
from app.features.mail_sync.providers import GmailClient, GoogleOAuthClient
from app.features.mail_sync.providers.base import ProviderClient
from app.features.mail_sync.repository.document_store import DocumentStore
from app.infrastructure.observability.logging import get_logger
from app.security.oauth_state import issue_state, verify_state

from .token_manager import TokenManager

logger = get_logger(__name__)


@dataclass(slots=True)
class LinkedAccount:
    account_email: str | None
    scope: str
    has_calendar: bool


class AccountLinkService:
    def __init__(self, oauth: GoogleOAuthClient, tokens: TokenManager, mailbox: ProviderClient):
        self._oauth = oauth
        self._tokens = tokens
        self._mailbox = mailbox

    def start(self, tenant_id: str) -> tuple[str, str]:
        """Return the consent URL and the state it carries."""
        state = issue_state(tenant_id)
        url = self._oauth.authorization_url(state)
        logger.info("Account link started", tenant_id=tenant_id)
        return url, state

    async def complete(self, tenant_id: str, code: str, state: str) -> LinkedAccount:
        """
        Finish the consent flow for ``tenant_id``.

        Raises:
            OAuthStateError: state forged, expired or issued to another tenant
            AuthRevoked: code rejected or no refresh token returned
            TransientAuthError: token endpoint unavailable
        """
        verify_state(state, tenant_id)
        grant = await self._oauth.exchange_code(code)
        if not grant.refresh_token:
            raise AuthRevoked(
                "Google did not return a refresh token; consent must be granted again",
                error_code="no_refresh_token",
            )

        try:
            account_email = await self._mailbox.account_address(grant.access_token)
        except MailSyncError as e:
            # The first sync learns the address instead
            logger.warning("Mailbox address lookup failed", tenant_id=tenant_id, error=e.message)
            account_email = None

        await self._tokens.save_grant(tenant_id, grant, account_email)
        has_calendar = any("calendar" in scope for scope in grant.scope.split())
        logger.info("Account linked", tenant_id=tenant_id, calendar=has_calendar)
        return LinkedAccount(account_email=account_email, scope=grant.scope, has_calendar=has_calendar)


def create_account_link_service(
    config: SyncConfig, store: DocumentStore, http: httpx.AsyncClient
) -> AccountLinkService:
    oauth = GoogleOAuthClient(http, config)
    return AccountLinkService(oauth, TokenManager(store, oauth, config), GmailClient(http, config))
