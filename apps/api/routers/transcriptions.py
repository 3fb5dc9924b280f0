"""Job status, audio playback, transcript retrieval, manual retry and sharing."""

import shutil

from fastapi import APIRouter, Depends, Query
from fastapi.responses import FileResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.background import BackgroundTask

from database import get_db
from models.user import User
from routers.auth_scope import get_current_user
from routers.rate_limit import rate_limit
from services.transcripts import (
    fetch_audio_for_playback,
    get_job_status,
    get_public_transcription,
    list_jobs,
    retry_job,
    set_sharing,
)

jobs_router = APIRouter()
router = APIRouter()
public_router = APIRouter()


class ShareRequest(BaseModel):
    enable: bool = True


@jobs_router.get("")
async def list_audio_files(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return {"items": await list_jobs(user.id, db, limit=limit, offset=offset)}


@jobs_router.get("/{audio_file_id}")
async def audio_file_status(
    audio_file_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Current status of a job, with transcript and summary once available."""
    return await get_job_status(audio_file_id, user.id, db)


@jobs_router.get("/{audio_file_id}/audio")
async def play_audio_file(
    audio_file_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Stream the stored audio back to its owner."""
    audio_file, local_path = await fetch_audio_for_playback(audio_file_id, user.id, db)
    return FileResponse(
        local_path,
        media_type=audio_file.content_type or "audio/mpeg",
        filename=audio_file.original_filename,
        content_disposition_type="inline",
        headers={"Cache-Control": "private, max-age=3600"},
        background=BackgroundTask(shutil.rmtree, str(local_path.parent), ignore_errors=True),
    )


@jobs_router.post("/{audio_file_id}/retry", status_code=202)
async def retry_audio_file(
    audio_file_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    _rate_limit: None = Depends(rate_limit("transcription_retry", limit=30, window_seconds=3600)),
):
    return await retry_job(audio_file_id, user.id, db)


@router.post("/{transcription_id}/share")
async def share_transcription(
    transcription_id: str,
    body: ShareRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await set_sharing(transcription_id, user.id, body.enable, db)


@public_router.get("/{share_token}")
async def public_transcription(share_token: str, db: AsyncSession = Depends(get_db)):
    """Public read-only view of a shared transcript."""
    return await get_public_transcription(share_token, db)
