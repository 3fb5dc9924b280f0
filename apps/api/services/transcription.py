"""Transcription pipeline: claim, transcribe, measure, settle.

A job moves ``pending -> processing -> completed | error``. Settlement writes
the transcript, debits the owner and marks the job completed inside one
database transaction, so a transcript exists if and only if it was paid for.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Optional, Tuple

import openai
from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.audio_file import (
    STATUS_COMPLETED,
    STATUS_ERROR,
    STATUS_PENDING,
    STATUS_PROCESSING,
    AudioFile,
)
from models.transcription import Transcription
from models.user import User
from multimodal.audio import TranscriptionEngineError, probe_duration_seconds, transcribe_audio
from services.background import drain_background_tasks, spawn_background
from services.credits import (
    InsufficientCreditsError,
    credits_for_minutes,
    debit,
    estimate_minutes_for_size,
    to_credits,
)
from services.notifications import notify_low_balance
from services.storage import StorageObjectNotFound, get_storage
from services.summary import generate_summary

logger = logging.getLogger(__name__)

FAILURE_MESSAGES = {
    "rate_limited": "The transcription service is rate limiting requests. Please retry shortly.",
    "quota_exceeded": "The transcription service quota is exhausted. Please try again later.",
    "invalid_credentials": "The transcription service rejected our credentials.",
    "insufficient_credits": "Insufficient credits to complete this transcription.",
    "source_not_found": "The uploaded audio could not be found in storage.",
    "unknown": "Transcription failed unexpectedly.",
}
CRITICAL_FAILURES = {"quota_exceeded", "invalid_credentials"}


def classify_failure(exc: BaseException) -> Tuple[str, str]:
    """Map an exception raised by the pipeline to ``(code, user_message)``."""
    if isinstance(exc, InsufficientCreditsError):
        return "insufficient_credits", str(exc)

    if isinstance(exc, TranscriptionEngineError):
        code = exc.code if exc.code in FAILURE_MESSAGES else "unknown"
    elif isinstance(exc, openai.RateLimitError):
        code = "quota_exceeded" if getattr(exc, "code", None) == "insufficient_quota" else "rate_limited"
    elif isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        code = "invalid_credentials"
    elif isinstance(exc, openai.APIStatusError) and exc.status_code == 429:
        code = "rate_limited"
    elif isinstance(exc, openai.APIStatusError) and exc.status_code == 401:
        code = "invalid_credentials"
    elif isinstance(exc, (StorageObjectNotFound, FileNotFoundError)):
        code = "source_not_found"
    else:
        code = "unknown"
    return code, FAILURE_MESSAGES[code]


async def claim_audio_file(
    audio_file_id: str,
    *,
    include_errored: bool = False,
    stall_minutes: Optional[int] = None,
) -> bool:
    """Move a job into ``processing`` if it is claimable. Returns True when this call won.

    Claimable means pending, or processing for longer than the stall window.
    Errored jobs are claimable only when ``include_errored`` is set (manual retry).
    """
    now = datetime.now(timezone.utc)
    window = stall_minutes if stall_minutes is not None else settings.SWEEP_STALL_MINUTES
    cutoff = now - timedelta(minutes=max(int(window), 0))

    claimable = [
        AudioFile.status == STATUS_PENDING,
        and_(
            AudioFile.status == STATUS_PROCESSING,
            or_(
                AudioFile.processing_started_at < cutoff,
                and_(AudioFile.processing_started_at.is_(None), AudioFile.created_at < cutoff),
            ),
        ),
    ]
    if include_errored:
        claimable.append(AudioFile.status == STATUS_ERROR)

    async with async_session_maker() as db:
        result = await db.execute(
            update(AudioFile)
            .where(AudioFile.id == audio_file_id, or_(*claimable))
            .values(
                status=STATUS_PROCESSING,
                processing_started_at=now,
                attempts=AudioFile.attempts + 1,
                error_code=None,
                error_message=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount == 1


async def _mark_failed(audio_file_id: str, code: str, message: str) -> None:
    now = datetime.now(timezone.utc)
    async with async_session_maker() as db:
        await db.execute(
            update(AudioFile)
            .where(AudioFile.id == audio_file_id, AudioFile.status != STATUS_COMPLETED)
            .values(status=STATUS_ERROR, error_code=code, error_message=message[:1000], updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()


async def _settle(
    audio_file: AudioFile,
    *,
    text: str,
    language: Optional[str],
    duration_seconds: float,
    cost: Decimal,
) -> Tuple[Optional[str], Decimal]:
    """Record transcript, debit and completion together.

    Returns ``(transcription_id, balance_after)``; the id is None when another
    run already settled this job.
    """
    now = datetime.now(timezone.utc)
    async with async_session_maker() as db:
        try:
            transcription = Transcription(
                user_id=audio_file.user_id,
                audio_file_id=audio_file.id,
                text=text,
                language=language,
                cost_credits=cost,
            )
            db.add(transcription)
            await db.flush()

            balance = await debit(audio_file.user_id, cost, db, commit=False)

            result = await db.execute(
                update(AudioFile)
                .where(AudioFile.id == audio_file.id, AudioFile.status == STATUS_PROCESSING)
                .values(
                    status=STATUS_COMPLETED,
                    duration_seconds=duration_seconds,
                    completed_at=now,
                    error_code=None,
                    error_message=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise RuntimeError(f"Audio file {audio_file.id} left processing before settlement")

            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.info("Audio file %s was already settled by another run", audio_file.id)
            return None, Decimal("0.00")
        except Exception:
            await db.rollback()
            raise
    return transcription.id, balance


async def process_audio_file(audio_file_id: str, *, claimed: bool = False) -> str:
    """Run one transcription job end to end. Returns the final outcome label.

    Failures never propagate: they are classified and recorded on the job.
    """
    if not claimed and not await claim_audio_file(audio_file_id):
        logger.info("Audio file %s is not claimable; skipping", audio_file_id)
        return "skipped"

    work_dir = Path(tempfile.mkdtemp(prefix="podbrief-"))
    try:
        async with async_session_maker() as db:
            result = await db.execute(select(AudioFile).where(AudioFile.id == audio_file_id))
            audio_file = result.scalar_one_or_none()
            if audio_file is None:
                logger.warning("Audio file %s disappeared before processing", audio_file_id)
                return "missing"
            balance_result = await db.execute(select(User.credits).where(User.id == audio_file.user_id))
            balance = to_credits(balance_result.scalar_one_or_none())

        if balance <= 0:
            raise InsufficientCreditsError(required=Decimal("0.01"), available=balance)

        storage = get_storage()
        local_path = await asyncio.to_thread(
            storage.get,
            audio_file.location_ref,
            work_dir / f"source-{audio_file.id}",
        )

        transcript = await asyncio.to_thread(transcribe_audio, str(local_path))

        # Container metadata wins over the engine's own estimate.
        duration = await asyncio.to_thread(probe_duration_seconds, str(local_path))
        if not duration:
            duration = transcript.get("duration")
        if not duration:
            duration = estimate_minutes_for_size(audio_file.size_bytes) * 60.0
            logger.info("Duration unknown for %s; estimated %.1fs from size", audio_file_id, duration)

        cost = credits_for_minutes(float(duration) / 60.0)
        transcription_id, balance_after = await _settle(
            audio_file,
            text=transcript["text"],
            language=transcript.get("language"),
            duration_seconds=float(duration),
            cost=cost,
        )
        if transcription_id is None:
            return "already_settled"

        logger.info(
            "Transcribed %s (%.1fs) for user %s; charged %s credits",
            audio_file_id,
            float(duration),
            audio_file.user_id,
            cost,
        )
        if balance_after < to_credits(settings.LOW_BALANCE_THRESHOLD):
            spawn_background(
                notify_low_balance(audio_file.user_id, balance_after),
                name=f"low-balance:{audio_file.user_id}",
            )
        spawn_background(
            generate_summary(transcription_id),
            name=f"summary:{transcription_id}",
        )
        return STATUS_COMPLETED
    except Exception as exc:
        code, message = classify_failure(exc)
        if code in CRITICAL_FAILURES:
            logger.critical("Transcription of %s failed (%s): %s", audio_file_id, code, exc)
        else:
            logger.error("Transcription of %s failed (%s): %s", audio_file_id, code, exc, exc_info=code == "unknown")
        await _mark_failed(audio_file_id, code, message)
        return STATUS_ERROR
    finally:
        shutil.rmtree(work_dir, ignore_errors=True)


async def process_audio_file_async(audio_file_id: str, claimed: bool = False) -> str:
    outcome = await process_audio_file(audio_file_id, claimed=claimed)
    await drain_background_tasks(timeout=600)
    return outcome


def process_audio_file_job(audio_file_id: str, claimed: bool = False):
    """RQ entrypoint."""
    return asyncio.run(process_audio_file_async(audio_file_id, claimed))
