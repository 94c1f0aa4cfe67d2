"""
Tests for health check endpoints.
"""

from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from app.main import app

client = TestClient(app)


def _configured():
    return (
        patch("app.routes.health.settings.GOOGLE_CLIENT_ID", "client-id"),
        patch("app.routes.health.settings.GOOGLE_CLIENT_SECRET", "client-secret"),
    )


def test_healthz_endpoint():
    """Test the basic health check endpoint."""
    response = client.get("/healthz")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["service"] == "mail-sync"


def test_readyz_endpoint_all_services_healthy():
    """Test readiness endpoint when the database and configuration are healthy."""
    client_id, client_secret = _configured()
    with (
        patch(
            "app.routes.health.db_health_check",
            new=AsyncMock(return_value={"healthy": True, "pool_stats": {"pool_size": 3}}),
        ),
        client_id,
        client_secret,
    ):
        response = client.get("/readyz")

    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is True
    checks = data["checks"]
    assert checks["database"]["ok"] is True
    assert checks["database"]["pool_stats"] == {"pool_size": 3}
    assert checks["configuration"]["ok"] is True
    assert checks["configuration"]["issues"] is None


def test_readyz_endpoint_database_unhealthy():
    """Test readiness endpoint reports the database error."""
    client_id, client_secret = _configured()
    with (
        patch(
            "app.routes.health.db_health_check",
            new=AsyncMock(return_value={"healthy": False, "error": "pool not initialized"}),
        ),
        client_id,
        client_secret,
    ):
        response = client.get("/readyz")

    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["database"]["ok"] is False
    assert data["checks"]["database"]["error"] == "pool not initialized"


def test_readyz_endpoint_database_check_raises():
    """Test readiness endpoint when the database check itself fails."""
    with patch(
        "app.routes.health.db_health_check",
        new=AsyncMock(side_effect=RuntimeError("boom")),
    ):
        response = client.get("/readyz")

    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["database"]["error"] == "RuntimeError: boom"


def test_readyz_endpoint_missing_google_client():
    """Test readiness endpoint flags missing OAuth client configuration."""
    with (
        patch(
            "app.routes.health.db_health_check",
            new=AsyncMock(return_value={"healthy": True}),
        ),
        patch("app.routes.health.settings.GOOGLE_CLIENT_ID", None),
    ):
        response = client.get("/readyz")

    data = response.json()
    assert data["overall_ok"] is False
    assert "Google OAuth client not configured" in data["checks"]["configuration"]["issues"]


def test_readyz_endpoint_unusable_encryption_key():
    """Test readiness endpoint flags a malformed encryption key."""
    client_id, client_secret = _configured()
    with (
        patch(
            "app.routes.health.db_health_check",
            new=AsyncMock(return_value={"healthy": True}),
        ),
        client_id,
        client_secret,
        patch("app.routes.health.settings.ENCRYPTION_KEY", "not-a-fernet-key"),
    ):
        response = client.get("/readyz")

    data = response.json()
    assert data["overall_ok"] is False
    assert "ENCRYPTION_KEY cannot round-trip a token" in data["checks"]["configuration"]["issues"]
