"""Row deletion helpers shared by retention cleanup and account deletion.

Deletes run child-first as bulk statements so they work the same with or
without database-level ``ON DELETE CASCADE`` enforcement.
"""

from __future__ import annotations

from typing import Iterable

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.audio_file import AudioFile
from models.credit_purchase import CreditPurchase
from models.summary import Summary
from models.transcription import Transcription
from models.user import User


async def delete_audio_rows(db: AsyncSession, audio_file_ids: Iterable[str]) -> None:
    ids = list(audio_file_ids)
    if not ids:
        return
    transcription_ids = select(Transcription.id).where(Transcription.audio_file_id.in_(ids))
    await db.execute(delete(Summary).where(Summary.transcription_id.in_(transcription_ids)))
    await db.execute(delete(Transcription).where(Transcription.audio_file_id.in_(ids)))
    await db.execute(delete(AudioFile).where(AudioFile.id.in_(ids)))


async def delete_user_rows(db: AsyncSession, user_id: str) -> None:
    transcription_ids = select(Transcription.id).where(Transcription.user_id == user_id)
    await db.execute(delete(Summary).where(Summary.transcription_id.in_(transcription_ids)))
    await db.execute(delete(Transcription).where(Transcription.user_id == user_id))
    await db.execute(delete(AudioFile).where(AudioFile.user_id == user_id))
    await db.execute(delete(CreditPurchase).where(CreditPurchase.user_id == user_id))
    await db.execute(delete(User).where(User.id == user_id))
