from pathlib import Path
from unittest.mock import patch

import pytest
from sqlalchemy.future import select

from main import app
from models.audio_file import AudioFile
from services.background import drain_background_tasks


UPLOAD_USER_ID = "upload-user"


def _fake_transcript(path: str) -> dict:
    return {"text": f"transcript of {Path(path).name}", "language": "en", "duration": 30.0}


async def _upload(client, headers, *, name="episode.mp3", payload=b"ID3-audio-bytes", content_type="audio/mpeg"):
    return await client.post(
        "/uploads",
        files={"file": (name, payload, content_type)},
        headers=headers,
    )


async def _send_chunk(client, headers, upload_id: str, index: int, total: int, data: bytes):
    return await client.post(
        "/uploads/chunk",
        data={
            "upload_id": upload_id,
            "chunk_index": str(index),
            "total_chunks": str(total),
            "filename": "long-episode.m4a",
            "content_type": "audio/x-m4a",
        },
        files={"chunk": ("blob", data, "application/octet-stream")},
        headers=headers,
    )


@pytest.mark.asyncio
async def test_direct_upload_runs_to_completion(client, make_user, auth_for):
    await make_user(UPLOAD_USER_ID, credits="10")
    headers = auth_for(UPLOAD_USER_ID)

    with patch("services.transcription.transcribe_audio", side_effect=_fake_transcript):
        response = await _upload(client, headers)
        assert response.status_code == 202
        payload = response.json()
        assert payload["status"] == "pending"
        assert payload["source"] == "direct"
        await drain_background_tasks(timeout=5)

    status_resp = await client.get(f"/audio-files/{payload['audio_file_id']}", headers=headers)
    assert status_resp.status_code == 200
    job = status_resp.json()
    assert job["status"] == "completed"
    assert job["transcription"]["cost_credits"] == 0.5
    assert job["transcription"]["text"].startswith("transcript of")

    other_resp = await client.get(f"/audio-files/{payload['audio_file_id']}", headers=auth_for("someone-else"))
    assert other_resp.status_code == 404


@pytest.mark.asyncio
async def test_direct_upload_rejects_disallowed_type(client, make_user, auth_for):
    await make_user(UPLOAD_USER_ID, credits="10")

    response = await _upload(client, auth_for(UPLOAD_USER_ID), name="notes.txt", content_type="text/plain")

    assert response.status_code == 415
    assert response.json()["detail"]["code"] == "invalid_file_type"


@pytest.mark.asyncio
async def test_direct_upload_rejects_oversize_file(client, make_user, auth_for):
    await make_user(UPLOAD_USER_ID, credits="10")

    with patch("config.settings.MAX_DIRECT_UPLOAD_BYTES", 1024):
        response = await _upload(client, auth_for(UPLOAD_USER_ID), payload=b"x" * 4096)

    assert response.status_code == 413
    assert response.json()["detail"]["code"] == "file_too_large"


@pytest.mark.asyncio
async def test_direct_upload_reports_credit_shortfall(client, make_user, auth_for, session_maker):
    await make_user(UPLOAD_USER_ID, credits="0.50")

    response = await _upload(client, auth_for(UPLOAD_USER_ID), payload=b"x" * (1024 * 1024))

    assert response.status_code == 402
    detail = response.json()["detail"]
    assert detail["code"] == "insufficient_credits"
    assert detail["required"] == 1.0
    assert detail["available"] == 0.5
    assert detail["shortfall"] == 0.5
    assert detail["purchase_url"].endswith("/credits")

    async with session_maker() as db:
        assert (await db.execute(select(AudioFile))).scalars().all() == []


@pytest.mark.asyncio
async def test_upload_rate_limit_is_per_user_rolling_window(client, make_user, auth_for):
    await make_user(UPLOAD_USER_ID, credits="10")
    headers = auth_for(UPLOAD_USER_ID)
    app.state.disable_rate_limits = False

    with (
        patch("config.settings.UPLOAD_RATE_LIMIT", 2),
        patch("config.settings.REDIS_URL", "redis://127.0.0.1:1"),
        patch("services.ingest.dispatch_transcription_job"),
    ):
        assert (await _upload(client, headers)).status_code == 202
        assert (await _upload(client, headers)).status_code == 202
        limited = await _upload(client, headers)

    assert limited.status_code == 429
    detail = limited.json()["detail"]
    assert detail["code"] == "rate_limited"
    assert detail["retry_after"] > 0
    assert limited.headers["X-RateLimit-Remaining"] == "0"
    assert "Retry-After" in limited.headers


@pytest.mark.asyncio
async def test_resent_first_chunk_counts_once_against_rate_limit(client, make_user, auth_for):
    await make_user(UPLOAD_USER_ID, credits="10")
    headers = auth_for(UPLOAD_USER_ID)
    app.state.disable_rate_limits = False

    with (
        patch("config.settings.UPLOAD_RATE_LIMIT", 1),
        patch("config.settings.REDIS_URL", "redis://127.0.0.1:1"),
    ):
        first = await _send_chunk(client, headers, "flaky-1", 0, 2, b"AAA")
        resent = await _send_chunk(client, headers, "flaky-1", 0, 2, b"AAA")
        second_chunk = await _send_chunk(client, headers, "flaky-1", 1, 2, b"BBB")
        other_upload = await _send_chunk(client, headers, "flaky-2", 0, 2, b"AAA")

    assert first.status_code == 200
    assert resent.status_code == 200
    assert second_chunk.status_code == 200
    assert other_upload.status_code == 429
    assert other_upload.json()["detail"]["code"] == "rate_limited"


@pytest.mark.asyncio
async def test_chunked_upload_reassembles_out_of_order(client, make_user, auth_for, session_maker):
    await make_user(UPLOAD_USER_ID, credits="10")
    headers = auth_for(UPLOAD_USER_ID)

    with patch("services.ingest.dispatch_transcription_job") as dispatch:
        for index, data in ((2, b"CCC"), (0, b"AAA"), (1, b"bad"), (1, b"BBB")):
            chunk_resp = await _send_chunk(client, headers, "episode-42", index, 3, data)
            assert chunk_resp.status_code == 200

        complete_resp = await client.post("/uploads/complete", json={"upload_id": "episode-42"}, headers=headers)

    assert complete_resp.status_code == 202
    payload = complete_resp.json()
    assert payload["source"] == "chunked"
    assert payload["size_bytes"] == 9
    dispatch.assert_called_once_with(payload["audio_file_id"])

    async with session_maker() as db:
        audio_file = (
            await db.execute(select(AudioFile).where(AudioFile.id == payload["audio_file_id"]))
        ).scalar_one()
    assert audio_file.content_type == "audio/mp4"
    assert Path(audio_file.location_ref).read_bytes() == b"AAABBBCCC"

    cleanup_resp = await client.post("/uploads/cleanup", json={"upload_id": "episode-42"}, headers=headers)
    assert cleanup_resp.json()["removed"] is False


@pytest.mark.asyncio
async def test_chunked_complete_rejects_missing_chunks(client, make_user, auth_for):
    await make_user(UPLOAD_USER_ID, credits="10")
    headers = auth_for(UPLOAD_USER_ID)

    await _send_chunk(client, headers, "partial-1", 0, 3, b"AAA")
    await _send_chunk(client, headers, "partial-1", 2, 3, b"CCC")
    response = await client.post("/uploads/complete", json={"upload_id": "partial-1"}, headers=headers)

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "missing_chunks"
    assert response.json()["detail"]["missing"] == [1]

    cleanup_resp = await client.post("/uploads/cleanup", json={"upload_id": "partial-1"}, headers=headers)
    assert cleanup_resp.json()["removed"] is True


@pytest.mark.asyncio
async def test_remote_upload_uses_reported_duration(client, make_user, auth_for, session_maker, public_dns):
    await make_user(UPLOAD_USER_ID, credits="1")
    headers = auth_for(UPLOAD_USER_ID)

    def fake_download(url: str, output_base: str, max_bytes=None) -> str:
        target = Path(f"{output_base}.mp3")
        target.write_bytes(b"remote-audio")
        return str(target)

    with (
        patch("services.ingest.probe_remote_source", return_value={"title": "Long Show", "duration": 600.0, "filesize": None}),
        patch("services.ingest.download_audio", side_effect=fake_download) as download,
    ):
        rejected = await client.post("/uploads/url", json={"url": "https://video.example.com/watch?v=1"}, headers=headers)

    assert rejected.status_code == 402
    download.assert_not_called()

    with (
        patch("services.ingest.probe_remote_source", return_value={"title": "Short Show", "duration": 30.0, "filesize": None}),
        patch("services.ingest.download_audio", side_effect=fake_download),
        patch("services.ingest.dispatch_transcription_job"),
    ):
        accepted = await client.post("/uploads/url", json={"url": "https://video.example.com/watch?v=2"}, headers=headers)

    assert accepted.status_code == 202
    payload = accepted.json()
    assert payload["source"] == "remote"
    assert payload["filename"] == "Short_Show.mp3"

    async with session_maker() as db:
        audio_file = (
            await db.execute(select(AudioFile).where(AudioFile.id == payload["audio_file_id"]))
        ).scalar_one()
    assert audio_file.source_url == "https://video.example.com/watch?v=2"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "url",
    [
        "http://127.0.0.1/episode.mp3",
        "http://169.254.169.254/latest/meta-data/",
        "http://10.0.0.8:8080/feed.mp3",
        "http://[::1]/episode.mp3",
    ],
)
async def test_remote_upload_refuses_internal_hosts(client, make_user, auth_for, url):
    await make_user(UPLOAD_USER_ID, credits="5")
    headers = auth_for(UPLOAD_USER_ID)

    with (
        patch("services.ingest.probe_remote_source") as remote_info,
        patch("services.ingest.download_audio") as download,
    ):
        response = await client.post("/uploads/url", json={"url": url}, headers=headers)

    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "source_unavailable"
    remote_info.assert_not_called()
    download.assert_not_called()


@pytest.mark.asyncio
async def test_remote_upload_refuses_hostname_resolving_to_loopback(client, make_user, auth_for):
    await make_user(UPLOAD_USER_ID, credits="5")
    headers = auth_for(UPLOAD_USER_ID)

    with (
        patch("multimodal.audio.resolve_host_addresses", return_value=["127.0.0.1"]),
        patch("services.ingest.probe_remote_source") as remote_info,
    ):
        response = await client.post("/uploads/url", json={"url": "http://intranet.example.com/a.mp3"}, headers=headers)

    assert response.status_code == 422
    remote_info.assert_not_called()


@pytest.mark.asyncio
async def test_remote_download_with_unknown_type_is_rejected(client, make_user, auth_for, session_maker, public_dns):
    await make_user(UPLOAD_USER_ID, credits="5")
    headers = auth_for(UPLOAD_USER_ID)
    downloaded = []

    def fake_download(url: str, output_base: str, max_bytes=None) -> str:
        target = Path(f"{output_base}.txt")
        target.write_text("not audio")
        downloaded.append(target)
        return str(target)

    with (
        patch("services.ingest.probe_remote_source", return_value={"title": "Notes", "duration": 30.0, "filesize": None}),
        patch("services.ingest.download_audio", side_effect=fake_download),
        patch("services.ingest.dispatch_transcription_job") as dispatch,
    ):
        response = await client.post("/uploads/url", json={"url": "https://files.example.com/notes"}, headers=headers)

    assert response.status_code == 415
    assert response.json()["detail"]["code"] == "invalid_file_type"
    assert not downloaded[0].exists()
    dispatch.assert_not_called()
    async with session_maker() as db:
        assert (await db.execute(select(AudioFile))).scalars().all() == []


@pytest.mark.asyncio
async def test_uploads_require_session(client):
    response = await client.post("/uploads", files={"file": ("a.mp3", b"abc", "audio/mpeg")})
    assert response.status_code == 401
