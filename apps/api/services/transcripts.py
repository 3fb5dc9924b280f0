"""Read models for jobs and transcripts, audio playback, manual retry, and public sharing."""

from __future__ import annotations

import asyncio
import logging
import secrets
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import selectinload

from models.audio_file import STATUS_COMPLETED, STATUS_PROCESSING, AudioFile
from models.summary import Summary
from models.transcription import Transcription
from services.job_queue import dispatch_transcription_job
from services.storage import StorageObjectNotFound, get_storage
from services.transcription import claim_audio_file

logger = logging.getLogger(__name__)

SHARE_TOKEN_BYTES = 32


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_summary(summary: Optional[Summary]) -> Optional[Dict[str, Any]]:
    if summary is None:
        return None
    return {
        "id": summary.id,
        "short_summary": summary.short_summary,
        "long_summary": summary.long_summary,
        "bullet_points": [line for line in (summary.bullet_points or "").split("\n") if line.strip()],
        "keywords": [word.strip() for word in (summary.keywords or "").split(",") if word.strip()],
        "sentiment": summary.sentiment,
        "language": summary.language,
    }


def serialize_transcription(transcription: Optional[Transcription], *, include_text: bool = True) -> Optional[Dict[str, Any]]:
    if transcription is None:
        return None
    payload = {
        "id": transcription.id,
        "language": transcription.language,
        "cost_credits": float(transcription.cost_credits),
        "is_public": bool(transcription.is_public),
        "share_token": transcription.share_token,
        "created_at": _iso(transcription.created_at),
        "summary": serialize_summary(transcription.summary),
    }
    if include_text:
        payload["text"] = transcription.text
    return payload


def serialize_job(audio_file: AudioFile, *, include_text: bool = True) -> Dict[str, Any]:
    return {
        "id": audio_file.id,
        "status": audio_file.status,
        "filename": audio_file.original_filename,
        "content_type": audio_file.content_type,
        "size_bytes": audio_file.size_bytes,
        "duration_seconds": audio_file.duration_seconds,
        "source": audio_file.source,
        "source_url": audio_file.source_url,
        "error_code": audio_file.error_code,
        "error_message": audio_file.error_message,
        "attempts": audio_file.attempts,
        "created_at": _iso(audio_file.created_at),
        "completed_at": _iso(audio_file.completed_at),
        "transcription": serialize_transcription(audio_file.transcription, include_text=include_text),
    }


def _job_query():
    return select(AudioFile).options(
        selectinload(AudioFile.transcription).selectinload(Transcription.summary)
    )


async def get_owned_audio_file(audio_file_id: str, user_id: str, db: AsyncSession) -> AudioFile:
    result = await db.execute(_job_query().where(AudioFile.id == audio_file_id))
    audio_file = result.scalar_one_or_none()
    if audio_file is None or audio_file.user_id != user_id:
        raise HTTPException(status_code=404, detail="Audio file not found")
    return audio_file


async def fetch_audio_for_playback(audio_file_id: str, user_id: str, db: AsyncSession) -> Tuple[AudioFile, Path]:
    """
    Copy an owned job's stored audio into a private scratch directory.
    The caller removes ``path.parent`` once the response has been sent.
    """
    audio_file = await get_owned_audio_file(audio_file_id, user_id, db)
    work_dir = Path(tempfile.mkdtemp(prefix="podbrief-play-"))
    suffix = Path(audio_file.original_filename).suffix.lower()
    try:
        local_path = await asyncio.to_thread(
            get_storage().get,
            audio_file.location_ref,
            work_dir / f"audio{suffix}",
        )
    except StorageObjectNotFound:
        shutil.rmtree(work_dir, ignore_errors=True)
        logger.warning("Stored audio for %s is gone (%s)", audio_file.id, audio_file.location_ref)
        raise HTTPException(status_code=404, detail="Audio file no longer available")
    except Exception:
        shutil.rmtree(work_dir, ignore_errors=True)
        raise
    return audio_file, local_path


async def get_job_status(audio_file_id: str, user_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Status, failure reason, transcript and summary of one job."""
    audio_file = await get_owned_audio_file(audio_file_id, user_id, db)
    return serialize_job(audio_file)


async def list_jobs(user_id: str, db: AsyncSession, *, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
    result = await db.execute(
        _job_query()
        .where(AudioFile.user_id == user_id)
        .order_by(AudioFile.created_at.desc())
        .offset(max(offset, 0))
        .limit(max(min(limit, 200), 1))
    )
    return [serialize_job(audio_file, include_text=False) for audio_file in result.scalars().all()]


async def retry_job(audio_file_id: str, user_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Re-drive an errored or stalled job owned by ``user_id``."""
    audio_file = await get_owned_audio_file(audio_file_id, user_id, db)
    if audio_file.status == STATUS_COMPLETED:
        return {"audio_file_id": audio_file.id, "status": STATUS_COMPLETED, "retried": False, "message": "Already completed"}

    if not await claim_audio_file(audio_file.id, include_errored=True):
        return {
            "audio_file_id": audio_file.id,
            "status": STATUS_PROCESSING,
            "retried": False,
            "message": "Already in progress",
        }

    dispatched = dispatch_transcription_job(audio_file.id, claimed=True)
    logger.info("Manual retry of %s by user %s (dispatched=%s)", audio_file.id, user_id, dispatched)
    return {"audio_file_id": audio_file.id, "status": STATUS_PROCESSING, "retried": True, "message": "Processing restarted"}


def generate_share_token() -> str:
    return secrets.token_urlsafe(SHARE_TOKEN_BYTES)


async def set_sharing(transcription_id: str, user_id: str, enable: bool, db: AsyncSession) -> Dict[str, Any]:
    """Toggle public access. The token is created once and survives disabling."""
    result = await db.execute(select(Transcription).where(Transcription.id == transcription_id))
    transcription = result.scalar_one_or_none()
    if transcription is None or transcription.user_id != user_id:
        raise HTTPException(status_code=404, detail="Transcription not found")

    for _ in range(3):
        if enable and not transcription.share_token:
            transcription.share_token = generate_share_token()
        transcription.is_public = bool(enable)
        try:
            await db.commit()
            break
        except IntegrityError:
            await db.rollback()
            result = await db.execute(select(Transcription).where(Transcription.id == transcription_id))
            transcription = result.scalar_one()
            transcription.share_token = None
    else:
        raise HTTPException(status_code=500, detail="Could not allocate a share token")

    return {
        "transcription_id": transcription.id,
        "is_public": bool(transcription.is_public),
        "share_token": transcription.share_token,
    }


async def get_public_transcription(share_token: str, db: AsyncSession) -> Dict[str, Any]:
    result = await db.execute(
        select(Transcription)
        .options(selectinload(Transcription.summary), selectinload(Transcription.audio_file))
        .where(Transcription.share_token == share_token)
    )
    transcription = result.scalar_one_or_none()
    if transcription is None or not transcription.is_public:
        raise HTTPException(status_code=404, detail="Shared transcription not found")

    return {
        "id": transcription.id,
        "text": transcription.text,
        "language": transcription.language,
        "created_at": _iso(transcription.created_at),
        "filename": transcription.audio_file.original_filename if transcription.audio_file else None,
        "duration_seconds": transcription.audio_file.duration_seconds if transcription.audio_file else None,
        "summary": serialize_summary(transcription.summary),
    }
