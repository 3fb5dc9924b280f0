"""Chapter markers for remote videos: download, transcribe, outline, then charge."""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict

import openai
from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from multimodal.audio import (
    RemoteSourceError,
    TranscriptionEngineError,
    download_audio,
    ensure_public_url,
    probe_duration_seconds,
    probe_remote_source,
    transcribe_audio,
)
from multimodal.llm import generate_chapters
from services.background import spawn_background
from services.credits import InsufficientCreditsError, credits_for_minutes, debit, to_credits
from services.errors import reject
from services.ingest import credit_shortfall, ensure_credits_cover
from services.notifications import notify_low_balance
from services.transcription import CRITICAL_FAILURES, classify_failure

logger = logging.getLogger(__name__)

BOT_CHECK_MARKERS = ("sign in to confirm", "not a bot")
UNAVAILABLE_FAILURES = {"rate_limited", "quota_exceeded", "invalid_credentials"}


def _source_rejection(exc: RemoteSourceError) -> HTTPException:
    message = str(exc)
    if any(marker in message.lower() for marker in BOT_CHECK_MARKERS):
        return reject(
            403,
            "source_blocked",
            "The video host asked for a sign-in or bot check. Download the audio and upload it instead.",
        )
    return reject(422, "source_unavailable", message)


async def generate_video_chapters(url: str, *, user_id: str, db: AsyncSession) -> Dict[str, Any]:
    """
    Build chapter markers for the video at ``url`` and charge for its length.

    The credit gate uses the duration the host reports before anything is
    downloaded. The charge uses the duration measured on the downloaded audio
    and is only taken once chapters exist, so a failed run costs nothing.
    """
    url = (url or "").strip()
    if not url.lower().startswith(("http://", "https://")):
        raise reject(422, "source_unavailable", "Only http(s) URLs can be used for chapters.")
    if not settings.ALLOW_REMOTE_DOWNLOAD:
        raise reject(422, "source_unavailable", "Remote imports are disabled on this server.")

    try:
        await asyncio.to_thread(ensure_public_url, url)
        info = await asyncio.to_thread(probe_remote_source, url)
    except RemoteSourceError as exc:
        raise _source_rejection(exc) from exc

    reported = info.get("duration")
    if not reported:
        raise reject(422, "source_unavailable", "Could not determine the length of this video.")
    filesize = info.get("filesize")
    if filesize and int(filesize) > settings.MAX_REMOTE_DOWNLOAD_BYTES:
        raise reject(
            413,
            "file_too_large",
            "Remote media exceeds the import size limit.",
            max_bytes=settings.MAX_REMOTE_DOWNLOAD_BYTES,
        )
    await ensure_credits_cover(user_id, float(reported) / 60.0, db)

    work_dir = Path(tempfile.mkdtemp(prefix="podbrief-chapters-"))
    try:
        try:
            audio_path = await asyncio.to_thread(download_audio, url, str(work_dir / "audio"))
        except RemoteSourceError as exc:
            raise _source_rejection(exc) from exc

        try:
            transcript = await asyncio.to_thread(transcribe_audio, audio_path)
            duration = await asyncio.to_thread(probe_duration_seconds, audio_path) or float(reported)
            chapters = await asyncio.to_thread(
                generate_chapters,
                transcript.get("text") or "",
                duration,
                transcript.get("language"),
            )
        except (TranscriptionEngineError, openai.OpenAIError) as exc:
            code, message = classify_failure(exc)
            log = logger.critical if code in CRITICAL_FAILURES else logger.error
            log("Chapter generation for %s failed (%s): %s", url, code, exc)
            raise reject(503 if code in UNAVAILABLE_FAILURES else 502, code, message) from exc
    finally:
        shutil.rmtree(work_dir, ignore_errors=True)

    if not chapters:
        raise reject(502, "chapters_unavailable", "No chapters could be generated for this video.")

    cost = credits_for_minutes(duration / 60.0)
    try:
        balance = await debit(user_id, cost, db)
    except InsufficientCreditsError as exc:
        raise credit_shortfall(exc.required, exc.available) from exc

    logger.info("Generated %d chapters for user %s (%.1fs, %s credits)", len(chapters), user_id, duration, cost)
    if balance < to_credits(settings.LOW_BALANCE_THRESHOLD):
        spawn_background(notify_low_balance(user_id, balance), name=f"low-balance:{user_id}")

    return {
        "url": url,
        "title": info.get("title") or "remote-audio",
        "duration_seconds": float(duration),
        "language": transcript.get("language"),
        "chapters": [chapter.model_dump() for chapter in chapters],
        "chapters_text": "\n".join(f"{chapter.timestamp} {chapter.title}" for chapter in chapters),
        "credits_used": float(cost),
        "balance": float(balance),
    }
