"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready). Readiness
verifies the feed database and reports whether the reconciliation
scheduler is running.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.credit_bridge.config import get_settings
from src.credit_bridge.core.database import get_engine

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    checks: dict = {"database": "ok", "services": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    services = getattr(request.app.state, "credit_services", None)
    if services is None:
        checks["services"] = "not_initialized"
    else:
        checks["reconciliation_running"] = services.scheduler.is_running

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: 200 if the database and services are up, 503 otherwise."""
    checks = await _check_dependencies(request)
    all_healthy = checks.get("database") == "ok" and checks.get("services") == "ok"

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
        },
    )
