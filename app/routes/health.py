"""
Health check endpoints with database pool monitoring.
"""

import time

from fastapi import APIRouter

from app.config import settings
from app.db.pool import db_health_check
from app.infrastructure.observability.logging import log_health_check
from app.security.encryption import validate_encryption_config

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "mail-sync"}


def _configuration_issues() -> list[str]:
    issues = []
    if not settings.SUPABASE_DB_URL:
        issues.append("SUPABASE_DB_URL not set")
    if not settings.ENCRYPTION_KEY:
        issues.append("ENCRYPTION_KEY not set")
    elif not validate_encryption_config():
        issues.append("ENCRYPTION_KEY cannot round-trip a token")
    if not settings.HASHING_SECRET:
        issues.append("HASHING_SECRET not set")
    if not settings.GOOGLE_CLIENT_ID or not settings.GOOGLE_CLIENT_SECRET:
        issues.append("Google OAuth client not configured")
    return issues


@router.get("/readyz")
async def readyz():
    """Readiness check covering the database pool and required configuration."""
    checks = {}
    overall_ok = True

    t0 = time.time()
    try:
        db_health = await db_health_check()
        is_healthy = db_health.get("healthy", False)
        latency_ms = round((time.time() - t0) * 1000, 1)

        checks["database"] = {"ok": is_healthy, "latency_ms": latency_ms}
        if "pool_stats" in db_health:
            checks["database"]["pool_stats"] = db_health["pool_stats"]
        if not is_healthy:
            checks["database"]["error"] = db_health.get("error", "Database unhealthy")

        log_health_check("database", is_healthy, latency_ms, checks["database"].get("error"))
        overall_ok = overall_ok and is_healthy

    except Exception as e:
        checks["database"] = {
            "ok": False,
            "error": f"{type(e).__name__}: {e}",
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        overall_ok = False

    issues = _configuration_issues()
    checks["configuration"] = {
        "ok": not issues,
        "issues": issues or None,
        "environment": settings.environment,
    }
    overall_ok = overall_ok and not issues

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
