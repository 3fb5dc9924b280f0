"""Best-effort transcript summarization that runs after settlement."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.future import select

from database import async_session_maker
from models.summary import Summary
from models.transcription import Transcription
from multimodal.llm import summarize_transcript

logger = logging.getLogger(__name__)


async def generate_summary(transcription_id: str) -> Optional[str]:
    """Create the summary for a transcription once. Returns the summary id.

    Failures are logged and swallowed; the transcription stays valid without one.
    """
    async with async_session_maker() as db:
        existing = await db.execute(select(Summary.id).where(Summary.transcription_id == transcription_id))
        existing_id = existing.scalar_one_or_none()
        if existing_id:
            return existing_id

        result = await db.execute(select(Transcription).where(Transcription.id == transcription_id))
        transcription = result.scalar_one_or_none()
        if transcription is None:
            logger.warning("Transcription %s not found for summary", transcription_id)
            return None
        text = transcription.text
        language = transcription.language

    if not (text or "").strip():
        logger.info("Transcription %s is empty; skipping summary", transcription_id)
        return None

    try:
        generated = await asyncio.to_thread(summarize_transcript, text, language)
    except Exception as exc:
        logger.error("Summary generation failed for %s: %s", transcription_id, exc)
        return None

    async with async_session_maker() as db:
        summary = Summary(
            transcription_id=transcription_id,
            short_summary=generated.short_summary,
            long_summary=generated.long_summary,
            bullet_points=generated.bullet_points,
            keywords=generated.keywords,
            sentiment=generated.sentiment,
            language=generated.language,
        )
        db.add(summary)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.info("Summary for %s was created concurrently", transcription_id)
            return None
        logger.info("Summary generated for transcription %s", transcription_id)
        return summary.id
