import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, field_validator

SENTIMENTS = ("positive", "neutral", "negative")

CHAPTER_LINE = re.compile(
    r"^\s*(?:\d+[.)]\s+|[-*\u2022]\s*)?\**\[?(\d{1,2}(?::\d{2}){1,2})\]?\**\s*[-:|\u2013\u2014]?\s*(.*?)\s*$"
)


def _join(value: Any, separator: str) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return separator.join(str(item).strip() for item in value if str(item).strip())
    return str(value).strip()


class TranscriptSummary(BaseModel):
    short_summary: str = ""
    long_summary: str = ""
    bullet_points: str = ""  # newline separated
    keywords: str = ""       # comma separated
    sentiment: str = "neutral"
    language: Optional[str] = None

    @field_validator("bullet_points", mode="before")
    @classmethod
    def _bullets(cls, value: Any) -> str:
        return _join(value, "\n")

    @field_validator("keywords", mode="before")
    @classmethod
    def _keywords(cls, value: Any) -> str:
        return _join(value, ", ")

    @field_validator("sentiment", mode="before")
    @classmethod
    def _sentiment(cls, value: Any) -> str:
        normalized = str(value or "").strip().lower()
        return normalized if normalized in SENTIMENTS else "neutral"

    @classmethod
    def from_llm_payload(cls, payload: dict) -> "TranscriptSummary":
        return cls(
            short_summary=payload.get("shortSummary") or payload.get("short_summary") or "",
            long_summary=payload.get("longSummary") or payload.get("long_summary") or "",
            bullet_points=payload.get("bulletPoints") or payload.get("bullet_points"),
            keywords=payload.get("keywords"),
            sentiment=payload.get("sentiment"),
            language=payload.get("language"),
        )


def timestamp_to_seconds(value: str) -> int:
    seconds = 0
    for part in value.split(":"):
        seconds = seconds * 60 + int(part)
    return seconds


def format_timestamp(seconds: float) -> str:
    """``MM:SS``, or ``H:MM:SS`` from one hour on."""
    total = max(int(seconds), 0)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


class VideoChapter(BaseModel):
    start_seconds: int
    timestamp: str
    title: str


def parse_chapter_lines(text: str, duration_seconds: Optional[float] = None) -> List[VideoChapter]:
    """
    Pull ``TIMESTAMP Title`` lines out of chat model output.

    Lines without a leading timestamp are ignored, as are starts at or past the
    end of the media. The first title wins for a repeated start, and the earliest
    chapter is moved to 00:00 so the list always opens at the beginning.
    """
    by_start: Dict[int, str] = {}
    for line in (text or "").splitlines():
        match = CHAPTER_LINE.match(line)
        if not match:
            continue
        title = match.group(2).strip().strip("*").strip()
        if not title:
            continue
        start = timestamp_to_seconds(match.group(1))
        if duration_seconds and start >= duration_seconds:
            continue
        by_start.setdefault(start, title)

    if not by_start:
        return []
    if 0 not in by_start:
        by_start[0] = by_start.pop(min(by_start))
    return [
        VideoChapter(start_seconds=start, timestamp=format_timestamp(start), title=title)
        for start, title in sorted(by_start.items())
    ]
