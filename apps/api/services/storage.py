"""Durable blob storage for uploaded audio.

Two backends share one interface:

- ``LocalBlobStorage`` keeps objects under ``STORAGE_LOCAL_DIR`` and hands out
  absolute paths as location refs.
- ``S3BlobStorage`` talks to any S3-compatible API (AWS, Cloudflare R2) through
  boto3 and hands out ``s3://bucket/key`` refs.

All methods are blocking; async callers wrap them with ``asyncio.to_thread``.
"""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Optional, Tuple

import boto3
from botocore.client import Config
from botocore.exceptions import ClientError

from config import settings

logger = logging.getLogger(__name__)

_STORAGE = None


class StorageObjectNotFound(FileNotFoundError):
    """The location ref does not point at a stored object."""


def _safe_key(key: str) -> str:
    parts = [part for part in str(key or "").replace("\\", "/").split("/") if part not in ("", ".", "..")]
    if not parts:
        raise ValueError("storage key must not be empty")
    return "/".join(parts)


class LocalBlobStorage:
    def __init__(self, root: str):
        self.root = Path(root).resolve()

    def _path_for(self, location_ref: str) -> Path:
        path = Path(location_ref).resolve()
        if self.root not in path.parents:
            raise StorageObjectNotFound(f"{location_ref} is outside local storage")
        return path

    def put(self, key: str, source_path: Path, content_type: Optional[str] = None) -> str:
        destination = self.root / _safe_key(key)
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(str(source_path), str(destination))
        return str(destination)

    def get(self, location_ref: str, destination: Path) -> Path:
        path = self._path_for(location_ref)
        if not path.is_file():
            raise StorageObjectNotFound(location_ref)
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(str(path), str(destination))
        return destination

    def delete(self, location_ref: str) -> None:
        try:
            path = self._path_for(location_ref)
        except StorageObjectNotFound:
            logger.warning("Refusing to delete %s outside local storage", location_ref)
            return
        path.unlink(missing_ok=True)


class S3BlobStorage:
    def __init__(self, bucket: str):
        if not bucket:
            raise ValueError("S3_BUCKET is not configured")
        self.bucket = bucket
        self.client = boto3.client(
            "s3",
            endpoint_url=settings.S3_ENDPOINT_URL or None,
            aws_access_key_id=settings.S3_ACCESS_KEY_ID or None,
            aws_secret_access_key=settings.S3_SECRET_ACCESS_KEY or None,
            config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
            region_name=settings.S3_REGION or None,
        )

    def _split(self, location_ref: str) -> Tuple[str, str]:
        ref = str(location_ref or "")
        if not ref.startswith("s3://"):
            raise StorageObjectNotFound(f"{ref} is not an s3:// ref")
        bucket, _, key = ref[len("s3://"):].partition("/")
        if not bucket or not key:
            raise StorageObjectNotFound(ref)
        return bucket, key

    def put(self, key: str, source_path: Path, content_type: Optional[str] = None) -> str:
        object_key = _safe_key(key)
        extra = {"ContentType": content_type} if content_type else None
        self.client.upload_file(str(source_path), self.bucket, object_key, ExtraArgs=extra)
        return f"s3://{self.bucket}/{object_key}"

    def get(self, location_ref: str, destination: Path) -> Path:
        bucket, key = self._split(location_ref)
        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.client.download_file(bucket, key, str(destination))
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in {"404", "NoSuchKey", "NotFound"}:
                raise StorageObjectNotFound(location_ref) from exc
            raise
        return destination

    def delete(self, location_ref: str) -> None:
        bucket, key = self._split(location_ref)
        self.client.delete_object(Bucket=bucket, Key=key)


def get_storage():
    """Return the configured blob storage backend (cached)."""
    global _STORAGE
    if _STORAGE is not None:
        return _STORAGE

    backend = (settings.STORAGE_BACKEND or "local").strip().lower()
    if backend == "s3":
        _STORAGE = S3BlobStorage(settings.S3_BUCKET)
    elif backend == "local":
        os.makedirs(settings.STORAGE_LOCAL_DIR, exist_ok=True)
        _STORAGE = LocalBlobStorage(settings.STORAGE_LOCAL_DIR)
    else:
        raise ValueError(f"Unknown STORAGE_BACKEND: {settings.STORAGE_BACKEND}")
    logger.info("Blob storage backend initialised: %s", backend)
    return _STORAGE


def reset_storage() -> None:
    global _STORAGE
    _STORAGE = None
