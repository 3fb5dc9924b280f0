"""Media ingest: three intake protocols normalised into one pending job.

Each request type is first staged to a local file, then passes the same
credit gate, is copied to durable blob storage and recorded as a
``pending`` AudioFile before processing is dispatched.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
import uuid
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Optional, Union

from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.audio_file import STATUS_PENDING, AudioFile
from multimodal.audio import RemoteSourceError, download_audio, ensure_public_url, probe_remote_source
from services.chunks import assemble_chunks, discard_chunks, get_manifest
from services.credits import (
    CreditAccountNotFound,
    credits_for_minutes,
    estimate_minutes_for_size,
    get_credit_balance,
)
from services.errors import reject
from services.job_queue import dispatch_transcription_job
from services.storage import get_storage

logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = {
    "audio/mpeg",
    "audio/wav",
    "audio/mp4",
    "audio/ogg",
    "audio/flac",
    "audio/webm",
}
CONTENT_TYPE_ALIASES = {
    "audio/mp3": "audio/mpeg",
    "audio/mpeg3": "audio/mpeg",
    "audio/x-mpeg": "audio/mpeg",
    "audio/x-mp3": "audio/mpeg",
    "audio/x-wav": "audio/wav",
    "audio/wave": "audio/wav",
    "audio/vnd.wave": "audio/wav",
    "audio/x-m4a": "audio/mp4",
    "audio/m4a": "audio/mp4",
    "audio/aac": "audio/mp4",
    "audio/x-flac": "audio/flac",
    "audio/vorbis": "audio/ogg",
    "application/ogg": "audio/ogg",
    "video/webm": "audio/webm",
}
EXTENSION_CONTENT_TYPES = {
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".m4a": "audio/mp4",
    ".mp4": "audio/mp4",
    ".ogg": "audio/ogg",
    ".oga": "audio/ogg",
    ".flac": "audio/flac",
    ".webm": "audio/webm",
}


@dataclass
class DirectUpload:
    staged_path: Path
    filename: str
    content_type: str


@dataclass
class ChunkedUpload:
    upload_id: str


@dataclass
class RemoteSource:
    url: str


IngestRequest = Union[DirectUpload, ChunkedUpload, RemoteSource]


@dataclass
class StagedAudio:
    path: Path
    filename: str
    content_type: str
    size_bytes: int
    source: str
    source_url: Optional[str] = None
    duration_seconds: Optional[float] = None

    @property
    def estimated_minutes(self) -> float:
        if self.duration_seconds:
            return self.duration_seconds / 60.0
        return estimate_minutes_for_size(self.size_bytes)


def sanitize_filename(filename: str, default: str = "audio.mp3") -> str:
    base = os.path.basename(filename or default)
    safe = "".join(ch if ch.isalnum() or ch in ("-", "_", ".") else "_" for ch in base)
    return safe[:200] or default


def normalize_content_type(content_type: Optional[str], filename: Optional[str] = None) -> str:
    """Return the canonical allowed MIME type or raise ``invalid_file_type``."""
    raw = (content_type or "").split(";")[0].strip().lower()
    normalized = CONTENT_TYPE_ALIASES.get(raw, raw)
    if normalized in ALLOWED_CONTENT_TYPES:
        return normalized

    if raw in ("", "application/octet-stream") and filename:
        guessed = EXTENSION_CONTENT_TYPES.get(Path(filename).suffix.lower())
        if guessed:
            return guessed

    raise reject(
        415,
        "invalid_file_type",
        "Invalid file type. Allowed: MP3, WAV, M4A, OGG, FLAC, WEBM.",
        content_type=content_type,
    )


def staging_dir() -> Path:
    path = Path(settings.STAGING_DIR) / "incoming"
    path.mkdir(parents=True, exist_ok=True)
    return path


def new_staging_path(suffix: str = "") -> Path:
    return staging_dir() / f"{uuid.uuid4()}{suffix}"


def credit_shortfall(required: Decimal, available: Decimal) -> HTTPException:
    """402 carrying the exact shortfall and where to buy more credits."""
    return reject(
        402,
        "insufficient_credits",
        f"Insufficient credits. Required: {required}, available: {available}.",
        required=float(required),
        available=float(available),
        shortfall=float(max(required - available, Decimal("0.00"))),
        purchase_url=f"{settings.APP_URL.rstrip('/')}/credits",
    )


async def ensure_credits_cover(user_id: str, estimated_minutes: float, db: AsyncSession) -> Decimal:
    """Admission credit gate. Raises 402 with the exact shortfall when the balance is short."""
    required = credits_for_minutes(estimated_minutes)
    try:
        available = await get_credit_balance(user_id, db)
    except CreditAccountNotFound:
        available = Decimal("0.00")

    if available < required:
        raise credit_shortfall(required, available)
    return required


async def _stage_chunked(request: ChunkedUpload, user_id: str) -> StagedAudio:
    manifest = get_manifest(request.upload_id, user_id=user_id)
    filename = sanitize_filename(manifest.get("filename") or "audio.mp3")
    content_type = normalize_content_type(manifest.get("content_type"), filename)
    destination = new_staging_path(Path(filename).suffix.lower())
    size = await asyncio.to_thread(
        assemble_chunks,
        request.upload_id,
        user_id=user_id,
        destination=destination,
    )
    return StagedAudio(
        path=destination,
        filename=filename,
        content_type=content_type,
        size_bytes=size,
        source="chunked",
    )


async def _stage_remote(request: RemoteSource, user_id: str, db: AsyncSession) -> StagedAudio:
    url = (request.url or "").strip()
    if not url.lower().startswith(("http://", "https://")):
        raise reject(422, "source_unavailable", "Only http(s) URLs can be imported.")
    if not settings.ALLOW_REMOTE_DOWNLOAD:
        raise reject(422, "source_unavailable", "Remote imports are disabled on this server.")

    try:
        await asyncio.to_thread(ensure_public_url, url)
        info = await asyncio.to_thread(probe_remote_source, url)
    except RemoteSourceError as exc:
        raise reject(422, "source_unavailable", str(exc)) from exc

    duration = info.get("duration")
    filesize = info.get("filesize")
    if filesize and int(filesize) > settings.MAX_REMOTE_DOWNLOAD_BYTES:
        raise reject(
            413,
            "file_too_large",
            "Remote media exceeds the import size limit.",
            max_bytes=settings.MAX_REMOTE_DOWNLOAD_BYTES,
        )
    if duration:
        await ensure_credits_cover(user_id, float(duration) / 60.0, db)
    elif filesize:
        await ensure_credits_cover(user_id, estimate_minutes_for_size(int(filesize)), db)

    output_base = str(new_staging_path())
    try:
        path = await asyncio.to_thread(download_audio, url, output_base)
    except RemoteSourceError as exc:
        raise reject(422, "source_unavailable", str(exc)) from exc

    local_path = Path(path)
    try:
        content_type = normalize_content_type(None, local_path.name)
    except HTTPException:
        remove_staged(local_path)
        raise
    stem = sanitize_filename(str(info.get("title") or "remote-audio"), default="remote-audio")
    filename = sanitize_filename(f"{Path(stem).stem}{local_path.suffix.lower() or '.mp3'}")
    return StagedAudio(
        path=local_path,
        filename=filename,
        content_type=content_type,
        size_bytes=local_path.stat().st_size,
        source="remote",
        source_url=url,
        duration_seconds=float(duration) if duration else None,
    )


async def _stage(request: IngestRequest, user_id: str, db: AsyncSession) -> StagedAudio:
    if isinstance(request, DirectUpload):
        filename = sanitize_filename(request.filename)
        return StagedAudio(
            path=request.staged_path,
            filename=filename,
            content_type=normalize_content_type(request.content_type, filename),
            size_bytes=request.staged_path.stat().st_size,
            source="direct",
        )
    if isinstance(request, ChunkedUpload):
        return await _stage_chunked(request, user_id)
    if isinstance(request, RemoteSource):
        return await _stage_remote(request, user_id, db)
    raise TypeError(f"Unsupported ingest request: {type(request).__name__}")


async def ingest(request: IngestRequest, *, user_id: str, db: AsyncSession) -> AudioFile:
    """Turn an intake request into a durable ``pending`` job and start processing it."""
    staged = await _stage(request, user_id, db)
    try:
        await ensure_credits_cover(user_id, staged.estimated_minutes, db)

        audio_file_id = str(uuid.uuid4())
        storage = get_storage()
        location_ref = await asyncio.to_thread(
            storage.put,
            f"audio/{user_id}/{audio_file_id}-{staged.filename}",
            staged.path,
            staged.content_type,
        )

        audio_file = AudioFile(
            id=audio_file_id,
            user_id=user_id,
            location_ref=location_ref,
            original_filename=staged.filename,
            content_type=staged.content_type,
            size_bytes=staged.size_bytes,
            source=staged.source,
            source_url=staged.source_url,
            status=STATUS_PENDING,
            attempts=0,
        )
        db.add(audio_file)
        try:
            await db.commit()
        except Exception:
            await db.rollback()
            await asyncio.to_thread(storage.delete, location_ref)
            raise
        await db.refresh(audio_file)
    finally:
        staged.path.unlink(missing_ok=True)

    if isinstance(request, ChunkedUpload):
        await asyncio.to_thread(discard_chunks, request.upload_id)

    logger.info(
        "Ingested %s (%s, %.2fMB) for user %s as %s",
        staged.filename,
        staged.source,
        staged.size_bytes / (1024 * 1024),
        user_id,
        audio_file.id,
    )
    dispatch_transcription_job(audio_file.id)
    return audio_file


def make_temp_upload_path(filename: str) -> Path:
    """Staging path for a direct upload stream, keeping the original suffix."""
    suffix = Path(sanitize_filename(filename)).suffix.lower()
    fd, path = tempfile.mkstemp(prefix="upload-", suffix=suffix, dir=str(staging_dir()))
    os.close(fd)
    return Path(path)


def remove_staged(path: Optional[Path]) -> None:
    if path is not None:
        Path(path).unlink(missing_ok=True)
