"""Liveness and readiness probes."""

from catracker.config import get_settings
from catracker.database import get_engine
from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text

router = APIRouter()


@router.get("/health")
async def health_check():
    return {"status": "ok", "service": "catracker-api"}


@router.get("/health/ready")
async def readiness_check():
    """Ready once the database answers; payment settings are reported, not required."""
    settings = get_settings()
    checks = {
        "webhook_secret": "configured" if settings.stripe_webhook_secret else "missing",
        "payment_provider": "configured" if settings.stripe_secret_key else "missing",
    }
    try:
        async with get_engine().connect() as connection:
            await connection.execute(text("SELECT 1"))
    except Exception as exc:
        checks["database"] = "unreachable"
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "checks": checks, "error": str(exc)},
        )
    checks["database"] = "ok"
    return {"status": "ready", "checks": checks}
