from decimal import Decimal
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.future import select

from models.user import User
from multimodal.audio import RemoteSourceError, TranscriptionEngineError
from multimodal.llm import generate_chapters
from multimodal.models import VideoChapter, format_timestamp, parse_chapter_lines
from services.credits import to_credits


CHAPTER_USER_ID = "chapter-user"
VIDEO_URL = "https://video.example.com/watch?v=abc123"


def _fake_download(url: str, output_base: str, max_bytes=None) -> str:
    target = Path(f"{output_base}.mp3")
    target.write_bytes(b"ID3-video-audio")
    return str(target)


def _chapters() -> list:
    return parse_chapter_lines("00:00 Welcome\n04:10 The interview\n08:30 Wrap-up")


async def _balance(session_maker, user_id: str = CHAPTER_USER_ID) -> Decimal:
    async with session_maker() as db:
        return to_credits((await db.execute(select(User.credits).where(User.id == user_id))).scalar_one())


def test_chapter_lines_are_cleaned_and_start_at_zero():
    reply = (
        "Here are the chapters for your video:\n"
        "1. 00:45 Cold open\n"
        "- 05:23 - Pricing talk\n"
        "**12:00** Hiring\n"
        "05:23 Duplicate start\n"
        "not a chapter line\n"
        "1:02:03 Past the end\n"
    )

    chapters = parse_chapter_lines(reply, duration_seconds=1800)

    assert [(c.timestamp, c.title) for c in chapters] == [
        ("00:00", "Cold open"),
        ("05:23", "Pricing talk"),
        ("12:00", "Hiring"),
    ]
    assert chapters[1].start_seconds == 323


def test_long_media_timestamps_include_hours():
    assert format_timestamp(3723) == "1:02:03"
    assert format_timestamp(59.9) == "00:59"
    assert parse_chapter_lines("no timestamps here") == []


def test_generate_chapters_truncates_transcript_and_names_language():
    response = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content="Chapters:\n00:00 Intro\n02:00 Main part"))]
    )
    client = MagicMock()
    client.chat.completions.create.return_value = response

    with (
        patch("multimodal.llm.OpenAI", return_value=client),
        patch("config.settings.CHAPTERS_MAX_INPUT_CHARS", 30),
    ):
        chapters = generate_chapters("y" * 80, 600.0, language="pt", api_key="sk-test")

    assert [c.title for c in chapters] == ["Intro", "Main part"]
    messages = client.chat.completions.create.call_args.kwargs["messages"]
    assert "pt" in messages[0]["content"]
    assert "about 10 minutes" in messages[1]["content"]
    assert "y" * 31 not in messages[1]["content"]
    assert messages[1]["content"].endswith("...(truncated)")


@pytest.mark.asyncio
async def test_chapters_charge_measured_duration(client, make_user, auth_for, session_maker, public_dns):
    await make_user(CHAPTER_USER_ID, credits="10")

    with (
        patch(
            "services.chapters.probe_remote_source",
            return_value={"title": "Deep Dive", "duration": 600.0, "filesize": None},
        ),
        patch("services.chapters.download_audio", side_effect=_fake_download),
        patch(
            "services.chapters.transcribe_audio",
            return_value={"text": "Welcome to the show.", "language": "en", "duration": 590.0},
        ),
        patch("services.chapters.probe_duration_seconds", return_value=540.0),
        patch("services.chapters.generate_chapters", return_value=_chapters()) as outline,
    ):
        response = await client.post("/chapters", json={"url": VIDEO_URL}, headers=auth_for(CHAPTER_USER_ID))

    assert response.status_code == 200
    payload = response.json()
    assert payload["title"] == "Deep Dive"
    assert payload["credits_used"] == 9.0
    assert payload["balance"] == 1.0
    assert payload["chapters"][1] == {"start_seconds": 250, "timestamp": "04:10", "title": "The interview"}
    assert payload["chapters_text"].splitlines()[0] == "00:00 Welcome"
    assert outline.call_args.args == ("Welcome to the show.", 540.0, "en")
    assert await _balance(session_maker) == Decimal("1.00")


@pytest.mark.asyncio
async def test_chapters_reject_short_balance_before_download(client, make_user, auth_for, session_maker, public_dns):
    await make_user(CHAPTER_USER_ID, credits="1")

    with (
        patch(
            "services.chapters.probe_remote_source",
            return_value={"title": "Long Talk", "duration": 600.0, "filesize": None},
        ),
        patch("services.chapters.download_audio") as download,
    ):
        response = await client.post("/chapters", json={"url": VIDEO_URL}, headers=auth_for(CHAPTER_USER_ID))

    assert response.status_code == 402
    detail = response.json()["detail"]
    assert detail["code"] == "insufficient_credits"
    assert detail["shortfall"] == 9.0
    download.assert_not_called()
    assert await _balance(session_maker) == Decimal("1.00")


@pytest.mark.asyncio
async def test_chapters_report_bot_checks(client, make_user, auth_for, public_dns):
    await make_user(CHAPTER_USER_ID, credits="5")

    with patch(
        "services.chapters.probe_remote_source",
        side_effect=RemoteSourceError("ERROR: Sign in to confirm you're not a bot"),
    ):
        response = await client.post("/chapters", json={"url": VIDEO_URL}, headers=auth_for(CHAPTER_USER_ID))

    assert response.status_code == 403
    assert response.json()["detail"]["code"] == "source_blocked"


@pytest.mark.asyncio
async def test_chapters_refuse_internal_hosts(client, make_user, auth_for):
    await make_user(CHAPTER_USER_ID, credits="5")

    with patch("services.chapters.probe_remote_source") as remote_info:
        response = await client.post(
            "/chapters",
            json={"url": "http://169.254.169.254/latest/meta-data/"},
            headers=auth_for(CHAPTER_USER_ID),
        )

    assert response.status_code == 422
    remote_info.assert_not_called()


@pytest.mark.asyncio
async def test_failed_chapter_runs_cost_nothing(client, make_user, auth_for, session_maker, public_dns):
    await make_user(CHAPTER_USER_ID, credits="5")
    remote = {"title": "Clip", "duration": 120.0, "filesize": None}

    with (
        patch("services.chapters.probe_remote_source", return_value=remote),
        patch("services.chapters.download_audio", side_effect=_fake_download),
        patch(
            "services.chapters.transcribe_audio",
            side_effect=TranscriptionEngineError("quota gone", code="quota_exceeded"),
        ),
    ):
        engine_down = await client.post("/chapters", json={"url": VIDEO_URL}, headers=auth_for(CHAPTER_USER_ID))

    with (
        patch("services.chapters.probe_remote_source", return_value=remote),
        patch("services.chapters.download_audio", side_effect=_fake_download),
        patch("services.chapters.transcribe_audio", return_value={"text": "hi", "language": None, "duration": 120.0}),
        patch("services.chapters.probe_duration_seconds", return_value=None),
        patch("services.chapters.generate_chapters", return_value=[]),
    ):
        empty = await client.post("/chapters", json={"url": VIDEO_URL}, headers=auth_for(CHAPTER_USER_ID))

    assert engine_down.status_code == 503
    assert engine_down.json()["detail"]["code"] == "quota_exceeded"
    assert empty.status_code == 502
    assert empty.json()["detail"]["code"] == "chapters_unavailable"
    assert await _balance(session_maker) == Decimal("5.00")


def test_chapter_model_fields():
    chapter = VideoChapter(start_seconds=90, timestamp="01:30", title="Questions")
    assert chapter.model_dump() == {"start_seconds": 90, "timestamp": "01:30", "title": "Questions"}
