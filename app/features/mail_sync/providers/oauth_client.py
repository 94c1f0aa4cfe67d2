"""
Google OAuth client.

Builds the consent URL, exchanges an authorization code for the first
grant, and refreshes access tokens. Token endpoint failures are mapped
to AuthRevoked (re-authorization needed) or TransientAuthError (worth
retrying); the caller owns retry policy.
"""

from urllib.parse import urlencode

import httpx

from app.config import SyncConfig
from app.features.mail_sync.domain import AuthRevoked, TokenGrant, TransientAuthError
from app.infrastructure.observability.logging import get_logger, secret_preview

logger = get_logger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

# Read-only access is all the sync needs
SYNC_SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/calendar.readonly",
]

RETRY_STATUS_CODES = {429, 500, 502, 503, 504}


class GoogleOAuthClient:
    """Talks to Google's authorization and token endpoints."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        config: SyncConfig,
        token_url: str = GOOGLE_TOKEN_URL,
        auth_url: str = GOOGLE_AUTH_URL,
    ):
        self._http = http
        self._config = config
        self._token_url = token_url
        self._auth_url = auth_url

    def authorization_url(self, state: str) -> str:
        """
        Consent URL for the sync scopes.

        Offline access with a forced consent prompt, so Google returns a
        refresh token even when the account was linked before.
        """
        self._require_client(redirect=True)
        params = {
            "client_id": self._config.client_id,
            "redirect_uri": self._config.redirect_uri,
            "scope": " ".join(SYNC_SCOPES),
            "response_type": "code",
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
        }
        return f"{self._auth_url}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenGrant:
        """
        Exchange an authorization code from the consent redirect.

        Raises:
            AuthRevoked: code rejected (expired, reused) or client misconfigured
            TransientAuthError: network failure, timeout, 429 or 5xx
        """
        self._require_client(redirect=True)
        data = {
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": self._config.redirect_uri,
        }
        logger.info("Exchanging authorization code", code_preview=secret_preview(code))
        return await self._post_token(data, "code_exchange")

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """
        Exchange a refresh token for a new access token.

        Raises:
            AuthRevoked: invalid_grant or any other non-retryable OAuth error
            TransientAuthError: network failure, timeout, 429 or 5xx
        """
        self._require_client()
        data = {
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        logger.info("Refreshing access token", refresh_token_preview=secret_preview(refresh_token))
        return await self._post_token(data, "token_refresh")

    def _require_client(self, *, redirect: bool = False) -> None:
        if not self._config.client_id or not self._config.client_secret:
            raise AuthRevoked("Google OAuth client is not configured", error_code="invalid_client")
        if redirect and not self._config.redirect_uri:
            raise AuthRevoked("Google OAuth redirect URI is not configured", error_code="invalid_client")

    async def _post_token(self, data: dict, operation: str) -> TokenGrant:
        try:
            response = await self._http.post(
                self._token_url,
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self._config.request_timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise TransientAuthError(f"{operation} timed out", error_code="timeout") from e
        except httpx.RequestError as e:
            logger.warning(
                "Network error at token endpoint",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise TransientAuthError(f"Network error during {operation}: {e}") from e

        return self._handle_token_response(response, operation)

    def _handle_token_response(self, response: httpx.Response, operation: str) -> TokenGrant:
        if response.status_code in RETRY_STATUS_CODES:
            logger.warning(
                "Token endpoint transient status", operation=operation, status_code=response.status_code
            )
            raise TransientAuthError(
                f"Token endpoint returned HTTP {response.status_code}",
                error_code=f"http_{response.status_code}",
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise TransientAuthError(
                f"Token endpoint returned a non-JSON body (HTTP {response.status_code})"
            ) from e
        if not isinstance(payload, dict):
            raise TransientAuthError("Token endpoint returned an unexpected payload")

        if not response.is_success:
            error_code = payload.get("error", "unknown_error")
            description = payload.get("error_description", "No description provided")
            logger.error(
                "Token request rejected",
                operation=operation,
                status_code=response.status_code,
                error_code=error_code,
                error_description=description,
            )
            raise AuthRevoked(
                f"Token request rejected ({error_code}): {description}", error_code=error_code
            )

        access_token = payload.get("access_token")
        if not access_token:
            raise TransientAuthError("Token response did not include an access token")

        grant = TokenGrant(
            access_token=access_token,
            expires_in=payload.get("expires_in"),
            refresh_token=payload.get("refresh_token"),
            scope=payload.get("scope", ""),
            token_type=payload.get("token_type", "Bearer"),
        )
        logger.info("Token request successful", operation=operation, expires_in=grant.expires_in)
        return grant
