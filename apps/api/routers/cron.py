"""Scheduler-triggered maintenance endpoints, guarded by ``CRON_SECRET``."""

import hmac
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.security import HTTPAuthorizationCredentials

from config import settings
from routers.auth_scope import auth_scheme
from services.job_queue import cleanup_expired_audio, sweep_stuck_jobs

router = APIRouter()
logger = logging.getLogger(__name__)


async def require_cron_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
    secret: Optional[str] = Query(default=None),
) -> None:
    expected = settings.CRON_SECRET
    if not expected:
        raise HTTPException(status_code=503, detail="CRON_SECRET is not configured.")
    supplied = credentials.credentials if credentials else (secret or "")
    if not hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.get("/process-pending", dependencies=[Depends(require_cron_secret)])
async def process_pending():
    """Resubmit pending and stalled transcription jobs."""
    result = await sweep_stuck_jobs()
    return {
        "success": True,
        **result,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/cleanup", dependencies=[Depends(require_cron_secret)])
async def cleanup():
    result = await cleanup_expired_audio()
    return {
        "success": True,
        **result,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
