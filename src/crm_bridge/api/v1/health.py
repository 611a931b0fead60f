"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks. Readiness
only verifies configuration; reaching the store needs a caller identity for
OnBehalf auth, so no store call is made here.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from src.crm_bridge.config import AuthMethod, get_settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


def _check_configuration(request: Request) -> dict:
    settings = getattr(request.app.state, "settings", None) or get_settings()
    checks: dict = {
        "tenant_url": "ok" if settings.MSDC_TENANT_URL else "missing",
        "auth_method": settings.MSDC_AUTH_METHOD.value,
        "tables": len(getattr(request.app.state, "tables", {})),
    }

    if settings.MSDC_AUTH_METHOD == AuthMethod.SERVICE_USER and not settings.MSDC_SERVICE_USER_NAME:
        checks["credentials"] = "missing"
    elif settings.MSDC_AUTH_METHOD != AuthMethod.SERVICE_USER and not settings.MSDC_AAD_CLIENT_SECRET:
        checks["credentials"] = "missing"
    else:
        checks["credentials"] = "ok"

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: tenant URL and credentials for the auth method are configured.

    Returns 200 if configured, 503 otherwise.
    """
    checks = _check_configuration(request)
    ready = checks["tenant_url"] == "ok" and checks["credentials"] == "ok"

    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if ready else "degraded",
            "checks": checks,
        },
    )
