"""
Health check endpoints.
"""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from config import settings

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint.
    Reports database, Redis, and payment processor status.
    """
    gateway = getattr(request.app.state, "payment_gateway", None)
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "stripe": "configured" if gateway is not None and gateway.configured else "missing",
    }

    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        health_status["database"] = "down: not initialised"
        health_status["status"] = "degraded"
    else:
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            health_status["database"] = "up"
        except Exception as e:
            health_status["database"] = f"down: {str(e)}"
            health_status["status"] = "degraded"

    redis_client = getattr(request.app.state, "redis", None)
    if redis_client is None:
        health_status["redis"] = "disabled"
    else:
        try:
            await redis_client.ping()
            health_status["redis"] = "up"
        except Exception as e:
            health_status["redis"] = f"down: {str(e)}"

    return health_status


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Kubernetes-style readiness probe."""
    missing = []
    if getattr(request.app.state, "session_maker", None) is None:
        missing.append("DATABASE")
    if settings.BILLING_ENABLED and not settings.STRIPE_SECRET_KEY:
        missing.append("STRIPE_SECRET_KEY")
    if settings.BILLING_ENABLED and not settings.STRIPE_WEBHOOK_SECRET:
        missing.append("STRIPE_WEBHOOK_SECRET")

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
