"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import engine

router = APIRouter()


def _collaborators() -> dict:
    return {
        "mux_api": "configured" if settings.MUX_TOKEN_ID and settings.MUX_TOKEN_SECRET else "missing",
        "mux_webhook_secret": "configured" if settings.MUX_WEBHOOK_SECRET else "missing",
        "mux_signing_key": "configured" if settings.MUX_SIGNING_KEY_ID and settings.MUX_SIGNING_PRIVATE_KEY else "missing",
        "deepgram": "configured" if settings.DEEPGRAM_API_KEY else "missing",
        "openai": "configured" if settings.OPENAI_API_KEY else "missing",
    }


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Returns overall system health status.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        **_collaborators(),
    }

    # Check database connection
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    # Check Redis connection (stage queue + realtime feed)
    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = []
    if settings.MUX_WEBHOOK_VERIFY_SIGNATURE and not settings.MUX_WEBHOOK_SECRET:
        missing.append("MUX_WEBHOOK_SECRET")
    if not (settings.MUX_TOKEN_ID and settings.MUX_TOKEN_SECRET):
        missing.append("MUX_TOKEN_ID/MUX_TOKEN_SECRET")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
