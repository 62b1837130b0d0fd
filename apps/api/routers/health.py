"""
Health endpoints: database and Redis reachability, Stripe configuration.
"""

from typing import List

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from config import settings
from database import get_db

router = APIRouter()


def _missing_stripe_settings() -> List[str]:
    return [key for key in ("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET") if not getattr(settings, key)]


async def _redis_status() -> str:
    try:
        client = redis.from_url(settings.REDIS_URL)
        try:
            await client.ping()
        finally:
            await client.aclose()
    except Exception as e:
        return f"down: {e}"
    return "up"


@router.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    """Database is required; Redis only backs rate limiting, so its outage degrades."""
    missing = _missing_stripe_settings()
    health_status = {
        "status": "healthy",
        "database": "up",
        "redis": await _redis_status(),
        "stripe": "missing" if missing else "configured",
    }

    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        health_status["database"] = f"down: {e}"

    if health_status["database"] != "up" or health_status["redis"] != "up" or missing:
        health_status["status"] = "degraded"
    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Not ready to take payments until both Stripe keys are configured."""
    missing = _missing_stripe_settings()
    if missing:
        return JSONResponse(status_code=503, content={"ready": False, "missing": missing})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
