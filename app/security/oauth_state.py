"""
Signed OAuth state parameters.

The state handed to Google's consent screen is a short-lived HS256 JWT
naming the tenant that started the flow. The callback only accepts a
state signed by this service for the same tenant, which ties the code
exchange to the request that started it.
"""

import secrets
from datetime import UTC, datetime, timedelta

import jwt

from app.infrastructure.observability.logging import get_logger

from .hashing import compute_hmac

logger = get_logger(__name__)

STATE_TTL_SECONDS = 900  # 15 minutes
STATE_AUDIENCE = "google-oauth-state"
STATE_ALGORITHM = "HS256"


class OAuthStateError(Exception):
    """The state parameter is missing, forged, expired or for another tenant."""


def _signing_key() -> str:
    # Distinct from the secret behind contact keys
    return compute_hmac("state-signing-key", namespace="oauth_state")


def issue_state(tenant_id: str, *, now: datetime | None = None) -> str:
    now = now or datetime.now(UTC)
    claims = {
        "sub": tenant_id,
        "aud": STATE_AUDIENCE,
        "iat": now,
        "exp": now + timedelta(seconds=STATE_TTL_SECONDS),
        "nonce": secrets.token_urlsafe(16),
    }
    return jwt.encode(claims, _signing_key(), algorithm=STATE_ALGORITHM)


def verify_state(state: str, tenant_id: str) -> None:
    """Raise OAuthStateError unless ``state`` was issued to ``tenant_id`` and is unexpired."""
    try:
        claims = jwt.decode(
            state,
            _signing_key(),
            algorithms=[STATE_ALGORITHM],
            audience=STATE_AUDIENCE,
            options={"require": ["exp", "sub", "aud"]},
        )
    except jwt.ExpiredSignatureError as e:
        raise OAuthStateError("OAuth state expired") from e
    except jwt.PyJWTError as e:
        logger.warning("Rejected OAuth state", error=str(e))
        raise OAuthStateError("OAuth state is invalid") from e

    if claims.get("sub") != tenant_id:
        logger.warning("OAuth state issued to another tenant")
        raise OAuthStateError("OAuth state does not belong to this account")
