# stina/routes/health.py
"""
Health check endpoints.
"""

import time

from fastapi import APIRouter, Depends

from stina.dependencies import ServiceContainer, get_container

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "stina-scheduling"}


@router.get("/readyz")
async def readyz(container: ServiceContainer = Depends(get_container)):
    """Readiness check across the store, the guard and configuration."""
    t0 = time.time()
    checks = await container.health()
    overall_ok = all(check.get("healthy", False) for check in checks.values())

    settings = container.settings
    config_issues = []
    if not settings.OPENAI_API_KEY:
        config_issues.append("OPENAI_API_KEY not set")
    if not settings.GOOGLE_CALENDAR_ACCESS_TOKEN:
        config_issues.append("GOOGLE_CALENDAR_ACCESS_TOKEN not set")
    if not settings.MAILSLURP_API_KEY or not settings.MAILSLURP_INBOX_ID:
        config_issues.append("MailSlurp inbox not configured")

    checks["configuration"] = {
        "healthy": not config_issues,
        "issues": config_issues or None,
        "environment": settings.environment,
    }
    overall_ok = overall_ok and not config_issues

    return {
        "overall_ok": overall_ok,
        "checks": checks,
        "latency_ms": round((time.time() - t0) * 1000, 1),
        "timestamp": time.time(),
    }
