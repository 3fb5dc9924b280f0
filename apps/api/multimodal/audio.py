import glob
import ipaddress
import logging
import os
import socket
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import ffmpeg
import httpx
import yt_dlp
from openai import OpenAI

from config import settings

logger = logging.getLogger(__name__)

DIRECT_AUDIO_EXTENSIONS = (".mp3", ".wav", ".m4a", ".mp4", ".ogg", ".oga", ".flac", ".webm")


class TranscriptionEngineError(Exception):
    """The speech-to-text engine refused or failed the request."""

    def __init__(self, message: str, code: str = "unknown"):
        super().__init__(message)
        self.code = code


class RemoteSourceError(Exception):
    """A remote media URL could not be resolved or downloaded."""


def transcribe_audio(audio_path: str, api_key: Optional[str] = None) -> Dict[str, Any]:
    """
    Transcribe an audio file with OpenAI Whisper.
    Returns a dict with ``text``, ``language`` and ``duration`` (seconds, may be None).
    """
    key = api_key if api_key is not None else settings.OPENAI_API_KEY
    if not key:
        raise TranscriptionEngineError("OPENAI_API_KEY is not configured.", code="invalid_credentials")

    client = OpenAI(api_key=key)
    with open(audio_path, "rb") as audio_file:
        transcript = client.audio.transcriptions.create(
            model=settings.OPENAI_TRANSCRIBE_MODEL,
            file=audio_file,
            response_format="verbose_json",
        )

    duration = getattr(transcript, "duration", None)
    return {
        "text": str(getattr(transcript, "text", "") or ""),
        "language": getattr(transcript, "language", None),
        "duration": float(duration) if duration else None,
    }


def probe_duration_seconds(audio_path: str) -> Optional[float]:
    """
    Probe audio metadata and return the duration in seconds, or None when unknown.
    """
    try:
        probe = ffmpeg.probe(audio_path)
    except Exception as e:
        logger.warning("Could not probe audio duration for %s: %s", audio_path, e)
        return None

    duration = float(probe.get("format", {}).get("duration", 0.0) or 0.0)
    if duration <= 0:
        for stream in probe.get("streams", []):
            if stream.get("codec_type") == "audio":
                duration = float(stream.get("duration", 0.0) or 0.0)
                if duration > 0:
                    break
    return duration if duration > 0 else None


def resolve_host_addresses(host: str) -> List[str]:
    try:
        infos = socket.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    except socket.gaierror as e:
        raise RemoteSourceError(f"Could not resolve host {host}: {e}") from e
    return sorted({info[4][0] for info in infos})


def _is_public_address(address: str) -> bool:
    ip = ipaddress.ip_address(address.split("%", 1)[0])
    mapped = getattr(ip, "ipv4_mapped", None)
    if mapped is not None:
        ip = mapped
    return not (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_multicast
        or ip.is_unspecified
    )


def ensure_public_url(url: str) -> None:
    """
    Refuse URLs whose host is, or resolves to, a private, loopback or link-local address.
    Call before any request is made on the user's behalf.
    """
    parsed = urlparse(url)
    host = parsed.hostname
    if parsed.scheme not in ("http", "https") or not host:
        raise RemoteSourceError(f"Unsupported media URL: {url}")

    try:
        addresses = [str(ipaddress.ip_address(host))]
    except ValueError:
        addresses = resolve_host_addresses(host)

    if not addresses or not all(_is_public_address(address) for address in addresses):
        logger.warning("Blocked media URL with non-public host %s", host)
        raise RemoteSourceError(f"Media host {host} is not publicly reachable.")


def _looks_like_direct_audio(url: str) -> bool:
    path = url.split("?", 1)[0].split("#", 1)[0].lower()
    return path.endswith(DIRECT_AUDIO_EXTENSIONS)


def probe_remote_source(url: str) -> Dict[str, Any]:
    """
    Resolve metadata for a remote media URL without downloading it.
    Returns ``title``, ``duration`` (seconds or None) and ``filesize`` (bytes or None).
    """
    if _looks_like_direct_audio(url):
        try:
            response = httpx.head(url, follow_redirects=True, timeout=15.0)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise RemoteSourceError(f"Could not reach {url}: {e}") from e
        size = response.headers.get("content-length")
        return {
            "title": os.path.basename(url.split("?", 1)[0]) or "remote-audio",
            "duration": None,
            "filesize": int(size) if size and size.isdigit() else None,
            "content_type": response.headers.get("content-type", "").split(";")[0] or None,
        }

    ydl_opts = {"quiet": True, "no_warnings": True, "skip_download": True, "noplaylist": True}
    try:
        with yt_dlp.YoutubeDL(ydl_opts) as ydl:
            info = ydl.extract_info(url, download=False)
    except Exception as e:
        raise RemoteSourceError(f"Could not resolve media at {url}: {e}") from e

    info = info or {}
    duration = info.get("duration")
    return {
        "title": info.get("title") or "remote-audio",
        "duration": float(duration) if duration else None,
        "filesize": info.get("filesize") or info.get("filesize_approx"),
        "content_type": "audio/mpeg",
    }


def _stream_to_file(url: str, output_path: str, max_bytes: int) -> str:
    written = 0
    try:
        with httpx.stream("GET", url, follow_redirects=True, timeout=60.0) as response:
            response.raise_for_status()
            with open(output_path, "wb") as out:
                for block in response.iter_bytes(1024 * 1024):
                    written += len(block)
                    if written > max_bytes:
                        raise RemoteSourceError(f"Remote file exceeds {max_bytes} bytes.")
                    out.write(block)
    except Exception:
        if os.path.exists(output_path):
            os.remove(output_path)
        raise
    return output_path


def download_audio(url: str, output_base: str, max_bytes: Optional[int] = None) -> str:
    """
    Download the best audio track at ``url`` to ``output_base`` (extension added).
    Plain audio links are streamed directly; everything else goes through yt-dlp
    and is converted to mp3.
    """
    limit = int(max_bytes or settings.MAX_REMOTE_DOWNLOAD_BYTES)
    try:
        if _looks_like_direct_audio(url):
            ext = os.path.splitext(url.split("?", 1)[0])[1].lower() or ".mp3"
            return _stream_to_file(url, f"{output_base}{ext}", limit)

        ydl_opts = {
            "format": "bestaudio/best",
            "outtmpl": f"{output_base}.%(ext)s",
            "quiet": True,
            "no_warnings": True,
            "noplaylist": True,
            "overwrites": True,
            "max_filesize": limit,
            "postprocessors": [
                {"key": "FFmpegExtractAudio", "preferredcodec": "mp3", "preferredquality": "64"}
            ],
        }
        with yt_dlp.YoutubeDL(ydl_opts) as ydl:
            ydl.download([url])
    except RemoteSourceError:
        raise
    except Exception as e:
        logger.error("Error downloading audio from %s: %s", url, e)
        raise RemoteSourceError(f"Could not download media at {url}: {e}") from e

    mp3_path = f"{output_base}.mp3"
    if os.path.exists(mp3_path):
        return mp3_path
    matches = sorted(glob.glob(f"{output_base}.*"))
    if matches:
        return matches[0]
    raise RemoteSourceError("Audio not found after download")
