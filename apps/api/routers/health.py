"""
Health check endpoints.
"""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from config import settings
from database import engine

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint.
    Reports database, Redis and which dispatcher is serving jobs.
    """
    dispatcher = getattr(request.app.state, "dispatcher", None)
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "dispatcher": dispatcher.mode if dispatcher is not None else "none",
        "webhook_secret": "configured" if settings.WEBHOOK_SECRET else "missing",
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    redis_client = getattr(request.app.state, "redis", None)
    try:
        if redis_client is None:
            raise RuntimeError("not configured")
        await redis_client.ping()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Kubernetes-style readiness probe."""
    missing = []
    if getattr(request.app.state, "dispatcher", None) is None:
        missing.append("dispatcher")
    if getattr(request.app.state, "idempotency_store", None) is None:
        missing.append("idempotency_store")

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
