"""Account profile and deletion."""

import asyncio
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import get_db
from models.audio_file import AudioFile
from models.user import User
from routers.auth_scope import get_current_user
from services.credits import to_credits
from services.retention import delete_user_rows
from services.storage import get_storage

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("")
async def get_account(user: User = Depends(get_current_user)):
    balance = to_credits(user.credits)
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "credits": float(balance),
        "low_balance": balance < to_credits(settings.LOW_BALANCE_THRESHOLD),
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


@router.delete("")
async def delete_account(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Delete the account, every owned record and every stored audio blob."""
    user_id = user.id
    result = await db.execute(select(AudioFile.location_ref).where(AudioFile.user_id == user_id))
    location_refs = [ref for ref in result.scalars().all() if ref]

    await delete_user_rows(db, user_id)
    await db.commit()

    storage = get_storage()
    failed = 0
    for location_ref in location_refs:
        try:
            await asyncio.to_thread(storage.delete, location_ref)
        except Exception as exc:
            failed += 1
            logger.warning("Could not delete blob %s for deleted user %s: %s", location_ref, user_id, exc)

    logger.info("Deleted account %s (%s blobs, %s failed)", user_id, len(location_refs), failed)
    return {"deleted": True, "blobs_deleted": len(location_refs) - failed}
