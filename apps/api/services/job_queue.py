"""Transcription job dispatch (inline or Redis/RQ) and periodic maintenance."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from redis import Redis
from rq import Queue
from rq.job import Job
from sqlalchemy import and_, or_
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.audio_file import STATUS_PENDING, STATUS_PROCESSING, AudioFile
from services.background import spawn_background
from services.chunks import cleanup_stale_chunk_dirs
from services.retention import delete_audio_rows
from services.storage import get_storage
from services.transcription import claim_audio_file, process_audio_file

logger = logging.getLogger(__name__)

TRANSCRIPTION_QUEUE_NAME = "transcription_jobs"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_transcription_queue() -> Queue:
    return Queue(
        name=TRANSCRIPTION_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=1800,
    )


def enqueue_transcription_job(audio_file_id: str, claimed: bool = False) -> Job:
    """Enqueue a transcription job; failures are recorded on the row, so no RQ retry."""
    queue = get_transcription_queue()
    return queue.enqueue(
        "services.transcription.process_audio_file_job",
        audio_file_id,
        claimed,
        job_id=f"transcription:{audio_file_id}:{int(datetime.now(timezone.utc).timestamp())}",
        job_timeout=1800,
        result_ttl=86400,
        failure_ttl=86400,
    )


def dispatch_transcription_job(audio_file_id: str, *, claimed: bool = False) -> bool:
    """Start processing without blocking the caller.

    Returns False when the job could not be handed off; it then stays in its
    current state and the periodic sweep picks it up later.
    """
    mode = (settings.TRANSCRIPTION_QUEUE_MODE or "inline").strip().lower()
    if mode == "rq":
        try:
            enqueue_transcription_job(audio_file_id, claimed)
            return True
        except Exception as exc:
            logger.error("Failed to enqueue transcription %s: %s", audio_file_id, exc)
            return False

    try:
        spawn_background(
            process_audio_file(audio_file_id, claimed=claimed),
            name=f"transcription:{audio_file_id}",
        )
    except RuntimeError as exc:
        logger.error("No running event loop to process %s: %s", audio_file_id, exc)
        return False
    return True


async def find_stuck_jobs(
    *,
    stall_minutes: Optional[int] = None,
    limit: Optional[int] = None,
) -> List[str]:
    """Ids of jobs that are pending or have been processing past the stall window."""
    window = stall_minutes if stall_minutes is not None else settings.SWEEP_STALL_MINUTES
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(int(window), 0))
    async with async_session_maker() as db:
        result = await db.execute(
            select(AudioFile.id)
            .where(
                or_(
                    AudioFile.status == STATUS_PENDING,
                    and_(
                        AudioFile.status == STATUS_PROCESSING,
                        or_(
                            AudioFile.processing_started_at < cutoff,
                            and_(
                                AudioFile.processing_started_at.is_(None),
                                AudioFile.created_at < cutoff,
                            ),
                        ),
                    ),
                )
            )
            .order_by(AudioFile.created_at.asc())
            .limit(max(int(limit or settings.SWEEP_BATCH_SIZE), 1))
        )
        return [row[0] for row in result.all()]


async def sweep_stuck_jobs(
    *,
    stall_minutes: Optional[int] = None,
    limit: Optional[int] = None,
) -> Dict[str, Any]:
    """Resubmit pending and stalled jobs. One bad job never stops the batch."""
    candidates = await find_stuck_jobs(stall_minutes=stall_minutes, limit=limit)
    resubmitted: List[str] = []
    failed: List[Dict[str, str]] = []
    for audio_file_id in candidates:
        try:
            if not await claim_audio_file(audio_file_id, stall_minutes=stall_minutes):
                continue
            if dispatch_transcription_job(audio_file_id, claimed=True):
                resubmitted.append(audio_file_id)
        except Exception as exc:
            logger.error("Sweep could not resubmit %s: %s", audio_file_id, exc)
            failed.append({"audio_file_id": audio_file_id, "error": str(exc)})

    if candidates:
        logger.info("Sweep found %s stuck jobs, resubmitted %s", len(candidates), len(resubmitted))
    return {
        "found": len(candidates),
        "resubmitted": len(resubmitted),
        "audio_file_ids": resubmitted,
        "failed": failed,
    }


async def cleanup_expired_audio(retention_days: Optional[int] = None) -> Dict[str, int]:
    """Delete audio files past retention together with their blobs.

    Jobs still pending or processing are left for the sweep. A blob that
    cannot be deleted keeps its row so the next run retries it.
    """
    days = retention_days if retention_days is not None else settings.AUDIO_RETENTION_DAYS
    cutoff = datetime.now(timezone.utc) - timedelta(days=max(int(days), 1))
    storage = get_storage()
    deleted = 0
    errors = 0

    async with async_session_maker() as db:
        result = await db.execute(
            select(AudioFile).where(
                AudioFile.created_at < cutoff,
                AudioFile.status.notin_((STATUS_PENDING, STATUS_PROCESSING)),
            )
        )
        expired_ids = []
        for audio_file in result.scalars().all():
            try:
                if audio_file.location_ref:
                    await asyncio.to_thread(storage.delete, audio_file.location_ref)
            except Exception as exc:
                errors += 1
                logger.warning("Could not delete blob for %s: %s", audio_file.id, exc)
                continue
            expired_ids.append(audio_file.id)

        if expired_ids:
            await delete_audio_rows(db, expired_ids)
            await db.commit()
        deleted = len(expired_ids)

    stale_chunks = await asyncio.to_thread(cleanup_stale_chunk_dirs)
    logger.info("Cleanup removed %s audio files and %s stale chunk uploads", deleted, stale_chunks)
    return {"deleted_records": deleted, "errors": errors, "stale_chunk_uploads": stale_chunks}
