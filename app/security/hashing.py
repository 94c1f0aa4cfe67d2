"""
Deterministic HMAC-SHA256 helpers for pseudonymous identifiers.

Contact document ids are derived from the normalized address so that two
syncs discovering the same correspondent always land on the same document,
without storing the raw address in the key.
"""

from __future__ import annotations

import hashlib
import hmac

from app.config import settings

SECRET_MIN_LENGTH = 16  # keep configurable but catch obvious misconfiguration

__all__ = [
    "HashingError",
    "compute_hmac",
    "hash_email",
    "contact_key",
]


class HashingError(RuntimeError):
    """Raised when hashing prerequisites are not satisfied."""


def _secret_bytes() -> bytes:
    secret = getattr(settings, "HASHING_SECRET", None)
    if not secret:
        raise HashingError("HASHING_SECRET is not configured")
    if len(secret) < SECRET_MIN_LENGTH:
        raise HashingError("HASHING_SECRET is too short; please rotate it")
    return secret.encode("utf-8")


def compute_hmac(value: str, *, namespace: str) -> str:
    """
    Compute a namespaced hex HMAC-SHA256 digest.

    Args:
        value: Raw string value to hash (will be normalized by caller).
        namespace: Logical namespace/salt to avoid cross-field collisions.
    """
    payload = value or ""
    scoped = f"{namespace}:{payload}"
    digest = hmac.new(_secret_bytes(), scoped.encode("utf-8"), hashlib.sha256)
    return digest.hexdigest()


def hash_email(email: str | None) -> str:
    """Deterministically hash a single email address."""
    return compute_hmac((email or "").strip().lower(), namespace="email")


def contact_key(tenant_id: str, email: str) -> str:
    """
    Document id for a contact created by the sync pipeline.

    Scoped by tenant so the same correspondent never shares an id across
    tenants.
    """
    return compute_hmac(f"{tenant_id}|{(email or '').strip().lower()}", namespace="contact")
