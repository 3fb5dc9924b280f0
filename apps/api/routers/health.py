"""
Health check endpoints.
"""

from typing import List, Tuple

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import engine
from services.storage import get_storage

router = APIRouter()


async def _probe_database() -> Tuple[bool, str]:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True, "up"
    except Exception as e:
        return False, f"down: {str(e)}"


async def _probe_redis() -> Tuple[bool, str]:
    client = redis.from_url(settings.REDIS_URL)
    try:
        await client.ping()
        return True, "up"
    except Exception as e:
        return False, f"down: {str(e)}"
    finally:
        await client.aclose()


def _missing_configuration() -> List[str]:
    missing = []
    if not settings.OPENAI_API_KEY:
        missing.append("OPENAI_API_KEY")
    if settings.STORAGE_BACKEND == "s3" and not settings.S3_BUCKET:
        missing.append("S3_BUCKET")
    if settings.STRIPE_SECRET_KEY and not settings.STRIPE_WEBHOOK_SECRET:
        missing.append("STRIPE_WEBHOOK_SECRET")
    return missing


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Database and storage are required; Redis only matters in ``rq`` queue mode.
    """
    db_ok, db_state = await _probe_database()
    redis_ok, redis_state = await _probe_redis()
    queue_mode = (settings.TRANSCRIPTION_QUEUE_MODE or "inline").strip().lower()

    try:
        storage_state = type(get_storage()).__name__
        storage_ok = True
    except Exception as e:
        storage_state = f"misconfigured: {str(e)}"
        storage_ok = False

    degraded = not db_ok or not storage_ok or (queue_mode == "rq" and not redis_ok)
    return {
        "status": "degraded" if degraded else "healthy",
        "api": "up",
        "database": db_state,
        "redis": redis_state,
        "queue_mode": queue_mode,
        "storage": storage_state,
        "openai": "configured" if settings.OPENAI_API_KEY else "missing",
        "stripe": "configured" if settings.STRIPE_SECRET_KEY else "missing",
    }


@router.get("/health/ready")
async def readiness_check():
    """Ready once transcription, storage and billing settings are complete."""
    missing = _missing_configuration()
    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
