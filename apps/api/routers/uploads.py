"""Audio intake endpoints: direct, chunked and remote URL uploads."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.audio_file import AudioFile
from models.user import User
from routers.auth_scope import get_current_user
from routers.rate_limit import enforce_upload_rate_limit
from services.chunks import discard_chunks, save_chunk, upload_started
from services.credits import estimate_credits_for_size, estimate_minutes_for_size
from services.errors import reject
from services.ingest import (
    ChunkedUpload,
    DirectUpload,
    RemoteSource,
    ensure_credits_cover,
    ingest,
    make_temp_upload_path,
    normalize_content_type,
    remove_staged,
    sanitize_filename,
)

router = APIRouter()
logger = logging.getLogger(__name__)

READ_BLOCK_BYTES = 1024 * 1024


class IngestResponse(BaseModel):
    audio_file_id: str
    status: str
    filename: str
    size_bytes: int
    source: str
    estimated_credits: float


class UploadIdRequest(BaseModel):
    upload_id: str = Field(min_length=1, max_length=64)


class RemoteUploadRequest(BaseModel):
    url: str = Field(min_length=8, max_length=2048)


def _ingest_response(audio_file: AudioFile) -> IngestResponse:
    return IngestResponse(
        audio_file_id=audio_file.id,
        status=audio_file.status,
        filename=audio_file.original_filename,
        size_bytes=int(audio_file.size_bytes or 0),
        source=audio_file.source,
        estimated_credits=float(estimate_credits_for_size(audio_file.size_bytes)),
    )


def _declared_length(request: Request) -> Optional[int]:
    raw = request.headers.get("content-length")
    if raw and raw.isdigit():
        return int(raw)
    return None


@router.post("", response_model=IngestResponse, status_code=202)
async def upload_audio(
    request: Request,
    file: UploadFile = File(...),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Single-request upload for files up to ``MAX_DIRECT_UPLOAD_BYTES``."""
    await enforce_upload_rate_limit(request, user.id)

    filename = sanitize_filename(file.filename or "audio.mp3")
    content_type = normalize_content_type(file.content_type, filename)
    max_bytes = int(settings.MAX_DIRECT_UPLOAD_BYTES)
    max_mib = max_bytes // (1024 * 1024)

    declared = _declared_length(request)
    if declared is not None and declared > max_bytes + 64 * 1024:
        raise reject(413, "file_too_large", f"File too large. Maximum {max_mib}MB allowed.", max_bytes=max_bytes)
    if declared is not None:
        await ensure_credits_cover(user.id, estimate_minutes_for_size(min(declared, max_bytes)), db)

    destination = make_temp_upload_path(filename)
    total_size = 0
    try:
        with destination.open("wb") as out:
            while True:
                block = await file.read(READ_BLOCK_BYTES)
                if not block:
                    break
                total_size += len(block)
                if total_size > max_bytes:
                    raise reject(
                        413,
                        "file_too_large",
                        f"File too large. Maximum {max_mib}MB allowed.",
                        max_bytes=max_bytes,
                    )
                out.write(block)
    except Exception:
        remove_staged(destination)
        raise
    finally:
        await file.close()

    if total_size == 0:
        remove_staged(destination)
        raise reject(422, "empty_file", "Uploaded file is empty.")

    audio_file = await ingest(
        DirectUpload(staged_path=destination, filename=filename, content_type=content_type),
        user_id=user.id,
        db=db,
    )
    return _ingest_response(audio_file)


@router.post("/chunk")
async def upload_chunk(
    request: Request,
    chunk: UploadFile = File(...),
    upload_id: str = Form(...),
    chunk_index: int = Form(...),
    total_chunks: int = Form(...),
    filename: str = Form(...),
    content_type: str = Form(...),
    total_size: Optional[int] = Form(default=None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Stage one chunk. The first chunk seen for an upload id carries the admission checks."""
    safe_name = sanitize_filename(filename)
    normalized_type = normalize_content_type(content_type, safe_name)

    if not await asyncio.to_thread(upload_started, upload_id):
        await enforce_upload_rate_limit(request, user.id)
        if total_size:
            await ensure_credits_cover(user.id, estimate_minutes_for_size(total_size), db)

    try:
        data = await chunk.read(int(settings.CHUNK_SIZE_BYTES) + 1)
    finally:
        await chunk.close()

    return await asyncio.to_thread(
        save_chunk,
        upload_id=upload_id,
        index=chunk_index,
        total_chunks=total_chunks,
        data=data,
        user_id=user.id,
        filename=safe_name,
        content_type=normalized_type,
        total_size=total_size,
    )


@router.post("/complete", response_model=IngestResponse, status_code=202)
async def complete_chunked_upload(
    body: UploadIdRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Reassemble staged chunks and create the transcription job."""
    audio_file = await ingest(ChunkedUpload(upload_id=body.upload_id), user_id=user.id, db=db)
    return _ingest_response(audio_file)


@router.post("/cleanup")
async def cleanup_chunked_upload(
    body: UploadIdRequest,
    user: User = Depends(get_current_user),
):
    """Discard an abandoned chunked upload. Safe to call when nothing is staged."""
    removed = await asyncio.to_thread(discard_chunks, body.upload_id, user_id=user.id)
    return {"upload_id": body.upload_id, "removed": removed}


@router.post("/url", response_model=IngestResponse, status_code=202)
async def upload_from_url(
    request: Request,
    body: RemoteUploadRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Download audio from a media page or direct audio link."""
    await enforce_upload_rate_limit(request, user.id)
    audio_file = await ingest(RemoteSource(url=body.url), user_id=user.id, db=db)
    return _ingest_response(audio_file)
