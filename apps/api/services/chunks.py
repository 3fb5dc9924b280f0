"""Chunked upload staging and reassembly.

Each upload id owns a directory under ``STAGING_DIR/chunks`` holding one file
per chunk index plus a ``manifest.json`` written on the first chunk. Writes go
through a temp file and ``os.replace`` so a resent chunk cleanly overwrites the
previous copy.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from config import settings
from services.errors import reject

logger = logging.getLogger(__name__)

UPLOAD_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
MANIFEST_NAME = "manifest.json"
CHUNK_PREFIX = "chunk-"


def chunks_root() -> Path:
    return Path(settings.STAGING_DIR) / "chunks"


def _upload_dir(upload_id: str) -> Path:
    if not UPLOAD_ID_PATTERN.match(str(upload_id or "")):
        raise reject(422, "invalid_upload_id", "uploadId must be 1-64 characters of [A-Za-z0-9_-].")
    return chunks_root() / upload_id


def _chunk_path(directory: Path, index: int) -> Path:
    return directory / f"{CHUNK_PREFIX}{index}"


def _write_atomic(path: Path, data: bytes) -> None:
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.{time.monotonic_ns()}.tmp")
    tmp_path.write_bytes(data)
    os.replace(tmp_path, path)


def _read_manifest(directory: Path) -> Optional[Dict[str, Any]]:
    manifest_path = directory / MANIFEST_NAME
    if not manifest_path.exists():
        return None
    return json.loads(manifest_path.read_text(encoding="utf-8"))


def upload_started(upload_id: str) -> bool:
    """True once any chunk of ``upload_id`` has been staged."""
    return (_upload_dir(upload_id) / MANIFEST_NAME).exists()


def present_indices(directory: Path) -> List[int]:
    indices = []
    if not directory.exists():
        return indices
    for entry in directory.iterdir():
        name = entry.name
        if not name.startswith(CHUNK_PREFIX):
            continue
        suffix = name[len(CHUNK_PREFIX):]
        if suffix.isdigit():
            indices.append(int(suffix))
    return sorted(indices)


def save_chunk(
    *,
    upload_id: str,
    index: int,
    total_chunks: int,
    data: bytes,
    user_id: str,
    filename: str,
    content_type: str,
    total_size: Optional[int] = None,
) -> Dict[str, Any]:
    """Persist one chunk keyed by (upload_id, index)."""
    max_chunks = max(int(settings.MAX_CHUNKS), 1)
    if total_chunks < 1:
        raise reject(422, "invalid_chunk", "totalChunks must be at least 1.")
    if total_chunks > max_chunks:
        max_mib = max_chunks * settings.CHUNK_SIZE_BYTES // (1024 * 1024)
        raise reject(
            413,
            "file_too_large",
            f"File too large. Maximum {max_mib}MB allowed for chunked uploads.",
            max_chunks=max_chunks,
        )
    if index < 0 or index >= total_chunks:
        raise reject(422, "invalid_chunk", f"chunkIndex must be between 0 and {total_chunks - 1}.")
    if not data:
        raise reject(422, "invalid_chunk", "Chunk payload is empty.")
    if len(data) > settings.CHUNK_SIZE_BYTES:
        raise reject(
            413,
            "chunk_too_large",
            f"Chunk exceeds {settings.CHUNK_SIZE_BYTES} bytes.",
            max_chunk_bytes=settings.CHUNK_SIZE_BYTES,
        )

    directory = _upload_dir(upload_id)
    directory.mkdir(parents=True, exist_ok=True)

    manifest = _read_manifest(directory)
    if manifest is None:
        manifest = {
            "upload_id": upload_id,
            "user_id": user_id,
            "filename": filename,
            "content_type": content_type,
            "total_chunks": int(total_chunks),
            "total_size": int(total_size) if total_size is not None else None,
            "created_at": time.time(),
        }
        _write_atomic(directory / MANIFEST_NAME, json.dumps(manifest).encode("utf-8"))
    else:
        if manifest.get("user_id") != user_id:
            raise reject(404, "upload_not_found", "Upload not found.")
        if int(manifest.get("total_chunks") or 0) != int(total_chunks):
            raise reject(
                409,
                "chunk_count_mismatch",
                "totalChunks does not match earlier chunks of this upload.",
                expected=manifest.get("total_chunks"),
            )

    _write_atomic(_chunk_path(directory, index), data)
    received = len([i for i in present_indices(directory) if i < total_chunks])
    logger.info("Chunk %s/%s saved for upload %s", index + 1, total_chunks, upload_id)
    return {
        "upload_id": upload_id,
        "chunk_index": index,
        "total_chunks": total_chunks,
        "received_chunks": received,
    }


def get_manifest(upload_id: str, *, user_id: str) -> Dict[str, Any]:
    directory = _upload_dir(upload_id)
    manifest = _read_manifest(directory)
    if manifest is None or manifest.get("user_id") != user_id:
        raise reject(404, "upload_not_found", "No staged chunks found for this upload.")
    return manifest


def assemble_chunks(upload_id: str, *, user_id: str, destination: Path) -> int:
    """Concatenate chunks 0..N-1 in index order into ``destination``.

    Every index must be present; a partial set is rejected and nothing is
    written. Returns the assembled size in bytes.
    """
    directory = _upload_dir(upload_id)
    manifest = get_manifest(upload_id, user_id=user_id)
    total_chunks = int(manifest["total_chunks"])

    present = set(present_indices(directory))
    missing = [index for index in range(total_chunks) if index not in present]
    if missing:
        raise reject(
            400,
            "missing_chunks",
            "Not all chunks received.",
            received=total_chunks - len(missing),
            expected=total_chunks,
            missing=missing[:50],
        )

    destination.parent.mkdir(parents=True, exist_ok=True)
    total = 0
    try:
        with destination.open("wb") as out:
            for index in range(total_chunks):
                with _chunk_path(directory, index).open("rb") as chunk_file:
                    shutil.copyfileobj(chunk_file, out)
                total += _chunk_path(directory, index).stat().st_size
    except Exception:
        destination.unlink(missing_ok=True)
        raise

    logger.info(
        "Reassembled %s chunks for upload %s (%.2fMB)",
        total_chunks,
        upload_id,
        total / (1024 * 1024),
    )
    return total


def discard_chunks(upload_id: str, *, user_id: Optional[str] = None) -> bool:
    """Remove the staging directory of an upload. Returns False when nothing was staged."""
    directory = _upload_dir(upload_id)
    if not directory.exists():
        return False
    if user_id is not None:
        manifest = _read_manifest(directory)
        if manifest is not None and manifest.get("user_id") != user_id:
            raise reject(404, "upload_not_found", "Upload not found.")
    shutil.rmtree(directory, ignore_errors=True)
    logger.info("Cleaned up chunks for upload %s", upload_id)
    return True


def cleanup_stale_chunk_dirs(max_age_hours: int = 24) -> int:
    """Remove abandoned chunk directories older than ``max_age_hours``."""
    root = chunks_root()
    if not root.exists():
        return 0
    cutoff = time.time() - max(int(max_age_hours), 1) * 3600
    removed = 0
    for directory in root.iterdir():
        if not directory.is_dir():
            continue
        try:
            if directory.stat().st_mtime < cutoff:
                shutil.rmtree(directory, ignore_errors=True)
                removed += 1
        except OSError as exc:
            logger.warning("Could not cleanup stale chunk directory %s: %s", directory, exc)
    return removed
