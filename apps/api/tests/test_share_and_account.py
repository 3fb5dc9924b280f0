from decimal import Decimal
from pathlib import Path
from unittest.mock import patch

import pytest
from sqlalchemy.future import select

from models.audio_file import AudioFile
from models.summary import Summary
from models.transcription import Transcription
from models.user import User
from services.storage import get_storage


OWNER_ID = "share-owner"


async def _completed_job(session_maker, tmp_path, user_id: str = OWNER_ID):
    source = tmp_path / f"{user_id}.mp3"
    source.write_bytes(b"ID3-share-audio")
    location_ref = get_storage().put(f"audio/{user_id}/talk.mp3", source, "audio/mpeg")
    async with session_maker() as db:
        audio_file = AudioFile(
            user_id=user_id,
            location_ref=location_ref,
            original_filename="talk.mp3",
            content_type="audio/mpeg",
            size_bytes=15,
            duration_seconds=90.0,
            source="direct",
            status="completed",
            attempts=1,
        )
        db.add(audio_file)
        await db.flush()
        transcription = Transcription(
            user_id=user_id,
            audio_file_id=audio_file.id,
            text="Thanks for listening.",
            language="en",
            cost_credits=Decimal("1.50"),
        )
        db.add(transcription)
        await db.flush()
        db.add(
            Summary(
                transcription_id=transcription.id,
                short_summary="Sign-off.",
                bullet_points="thanks\nbye",
                keywords="outro, thanks",
                sentiment="positive",
                language="en",
            )
        )
        await db.commit()
        return audio_file.id, transcription.id, location_ref


@pytest.mark.asyncio
async def test_share_token_survives_disable_and_reenable(client, make_user, auth_for, session_maker, tmp_path):
    await make_user(OWNER_ID, credits="5")
    _, transcription_id, _ = await _completed_job(session_maker, tmp_path)
    headers = auth_for(OWNER_ID)

    enabled = await client.post(f"/transcriptions/{transcription_id}/share", json={"enable": True}, headers=headers)
    assert enabled.status_code == 200
    token = enabled.json()["share_token"]
    assert token and enabled.json()["is_public"] is True

    public = await client.get(f"/share/{token}")
    assert public.status_code == 200
    assert public.json()["text"] == "Thanks for listening."
    assert public.json()["summary"]["bullet_points"] == ["thanks", "bye"]
    assert public.json()["summary"]["keywords"] == ["outro", "thanks"]

    disabled = await client.post(f"/transcriptions/{transcription_id}/share", json={"enable": False}, headers=headers)
    assert disabled.json()["is_public"] is False
    assert disabled.json()["share_token"] == token
    assert (await client.get(f"/share/{token}")).status_code == 404

    reenabled = await client.post(f"/transcriptions/{transcription_id}/share", json={"enable": True}, headers=headers)
    assert reenabled.json()["share_token"] == token
    assert (await client.get(f"/share/{token}")).status_code == 200


@pytest.mark.asyncio
async def test_only_owner_can_share(client, make_user, auth_for, session_maker, tmp_path):
    await make_user(OWNER_ID, credits="5")
    _, transcription_id, _ = await _completed_job(session_maker, tmp_path)

    response = await client.post(
        f"/transcriptions/{transcription_id}/share",
        json={"enable": True},
        headers=auth_for("not-the-owner"),
    )

    assert response.status_code == 404
    assert (await client.get("/share/unknown-token")).status_code == 404


@pytest.mark.asyncio
async def test_job_listing_omits_transcript_text(client, make_user, auth_for, session_maker, tmp_path):
    await make_user(OWNER_ID, credits="5")
    audio_file_id, _, _ = await _completed_job(session_maker, tmp_path)

    response = await client.get("/audio-files", headers=auth_for(OWNER_ID))

    assert response.status_code == 200
    items = response.json()["items"]
    assert [item["id"] for item in items] == [audio_file_id]
    assert "text" not in items[0]["transcription"]
    assert items[0]["transcription"]["summary"]["sentiment"] == "positive"


@pytest.mark.asyncio
async def test_retry_skips_completed_and_restarts_errored(client, make_user, auth_for, session_maker, tmp_path):
    await make_user(OWNER_ID, credits="5")
    headers = auth_for(OWNER_ID)
    completed_id, _, _ = await _completed_job(session_maker, tmp_path)

    completed_retry = await client.post(f"/audio-files/{completed_id}/retry", headers=headers)
    assert completed_retry.status_code == 202
    assert completed_retry.json()["retried"] is False

    async with session_maker() as db:
        failed = AudioFile(
            user_id=OWNER_ID,
            location_ref=str(tmp_path / "missing.mp3"),
            original_filename="missing.mp3",
            content_type="audio/mpeg",
            size_bytes=10,
            source="direct",
            status="error",
            error_code="rate_limited",
            attempts=1,
        )
        db.add(failed)
        await db.commit()
        failed_id = failed.id

    with patch("services.transcripts.dispatch_transcription_job", return_value=True) as dispatch:
        errored_retry = await client.post(f"/audio-files/{failed_id}/retry", headers=headers)

    assert errored_retry.json()["retried"] is True
    dispatch.assert_called_once_with(failed_id, claimed=True)
    async with session_maker() as db:
        refreshed = (await db.execute(select(AudioFile).where(AudioFile.id == failed_id))).scalar_one()
    assert refreshed.status == "processing"
    assert refreshed.attempts == 2
    assert refreshed.error_code is None


@pytest.mark.asyncio
async def test_account_deletion_removes_rows_and_blobs(client, make_user, auth_for, session_maker, tmp_path):
    await make_user(OWNER_ID, credits="5")
    await make_user("bystander", credits="5")
    audio_file_id, transcription_id, location_ref = await _completed_job(session_maker, tmp_path)
    _, _, bystander_ref = await _completed_job(session_maker, tmp_path, user_id="bystander")

    profile = await client.get("/account", headers=auth_for(OWNER_ID))
    assert profile.json()["credits"] == 5.0

    response = await client.delete("/account", headers=auth_for(OWNER_ID))

    assert response.status_code == 200
    assert response.json() == {"deleted": True, "blobs_deleted": 1}
    assert not Path(location_ref).exists()
    assert Path(bystander_ref).exists()
    async with session_maker() as db:
        assert (await db.execute(select(User).where(User.id == OWNER_ID))).scalar_one_or_none() is None
        assert (await db.execute(select(AudioFile).where(AudioFile.id == audio_file_id))).scalar_one_or_none() is None
        assert (
            await db.execute(select(Summary).where(Summary.transcription_id == transcription_id))
        ).scalar_one_or_none() is None
        assert (await db.execute(select(User).where(User.id == "bystander"))).scalar_one() is not None


@pytest.mark.asyncio
async def test_owner_can_play_stored_audio(client, make_user, auth_for, session_maker, tmp_path):
    await make_user(OWNER_ID, credits="5")
    await make_user("someone-else", credits="5")
    audio_file_id, _, _ = await _completed_job(session_maker, tmp_path)

    played = await client.get(f"/audio-files/{audio_file_id}/audio", headers=auth_for(OWNER_ID))
    assert played.status_code == 200
    assert played.content == b"ID3-share-audio"
    assert played.headers["content-type"] == "audio/mpeg"
    assert played.headers["content-disposition"].startswith("inline")
    assert "talk.mp3" in played.headers["content-disposition"]
    assert played.headers["cache-control"] == "private, max-age=3600"

    stranger = await client.get(f"/audio-files/{audio_file_id}/audio", headers=auth_for("someone-else"))
    assert stranger.status_code == 404


@pytest.mark.asyncio
async def test_playback_of_deleted_blob_is_not_found(client, make_user, auth_for, session_maker, tmp_path):
    await make_user(OWNER_ID, credits="5")
    audio_file_id, _, location_ref = await _completed_job(session_maker, tmp_path)
    get_storage().delete(location_ref)

    response = await client.get(f"/audio-files/{audio_file_id}/audio", headers=auth_for(OWNER_ID))

    assert response.status_code == 404
    assert response.json()["detail"] == "Audio file no longer available"
