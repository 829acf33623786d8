import pytest
from unittest.mock import AsyncMock, patch

from sqlalchemy import update

from conftest import auth_headers
from models.asset import Asset
from services.transcription import run_transcription
from multimodal.audio import parse_deepgram_response
from multimodal.models import TranscriptParagraph, TranscriptResult

SIGNED_URL = "https://stream.mux.com/play-1/audio.m4a?token=signed"
TRANSCRIPT = TranscriptResult(
    text="[12.3s] Here is the laptop.",
    paragraphs=[TranscriptParagraph(start=12.3, end=14.0, text="Here is the laptop.")],
)


async def _pending_asset(factory, **fields):
    values = {
        "mux_asset_id": "mux-1",
        "mux_playback_id": "play-1",
        "mux_processing_status": "ready",
        "transcript_processing_status": "pending",
        "mux_audio_url": "pending:mux-1/rend-1/audio.m4a",
    }
    values.update(fields)
    return await factory.asset(**values)


@pytest.mark.asyncio
async def test_transcribe_resolves_sentinel_and_stores_transcript(client, factory):
    asset_id = await _pending_asset(factory)
    await factory.scratch(mux_asset_id="mux-1", name="Dell Laptop", video_timestamp=11.9)

    transcribe = AsyncMock(return_value=TRANSCRIPT)
    with patch("services.transcription.static_rendition_url", return_value=SIGNED_URL) as sign, \
         patch("services.transcription.transcribe_audio_url", new=transcribe), \
         patch("services.stage_orchestrator.schedule_merge") as schedule_merge:
        response = await client.post("/transcribe", json={"assetId": asset_id}, headers=auth_headers("user-1"))

    assert response.status_code == 202
    assert response.json() == {"accepted": True, "assetId": asset_id, "status": "processing"}
    sign.assert_called_once_with("play-1", "audio.m4a")
    assert transcribe.await_args.args[0] == SIGNED_URL

    asset = await factory.get_asset(asset_id)
    assert asset.transcript_processing_status == "completed"
    assert asset.transcript_text == "[12.3s] Here is the laptop."
    assert asset.transcript["paragraphs"][0]["start"] == 12.3
    assert asset.mux_audio_url == SIGNED_URL
    schedule_merge.assert_called_once_with(asset_id)


@pytest.mark.asyncio
async def test_transcribe_without_scratch_items_does_not_merge(client, factory):
    asset_id = await _pending_asset(factory, mux_audio_url="https://cdn.example.com/audio.m4a")

    with patch("services.stage_orchestrator.schedule_merge") as schedule_merge:
        response = await client.post("/transcribe", json={"assetId": asset_id}, headers=auth_headers("user-1"))

    assert response.status_code == 202
    asset = await factory.get_asset(asset_id)
    # no Deepgram key configured: the mock transcript is stored
    assert asset.transcript_processing_status == "completed"
    assert "laptop" in asset.transcript_text
    schedule_merge.assert_not_called()


@pytest.mark.asyncio
async def test_transcribe_rejects_bad_requests(client, factory):
    processing = await _pending_asset(factory, transcript_processing_status="processing")
    completed = await _pending_asset(factory, transcript_processing_status="completed")
    no_audio = await _pending_asset(factory, mux_audio_url=None)
    foreign = await _pending_asset(factory, user_id="someone-else")
    headers = auth_headers("user-1")

    assert (await client.post("/transcribe", json={}, headers=headers)).status_code == 400
    assert (await client.post("/transcribe", json={"assetId": processing}, headers=headers)).status_code == 409
    assert (await client.post("/transcribe", json={"assetId": completed}, headers=headers)).status_code == 409
    assert (await client.post("/transcribe", json={"assetId": no_audio}, headers=headers)).status_code == 400
    assert (await client.post("/transcribe", json={"assetId": foreign}, headers=headers)).status_code == 404
    assert (await client.post("/transcribe", json={"assetId": foreign})).status_code == 401


@pytest.mark.asyncio
async def test_transcription_failure_marks_asset_error(client, factory):
    asset_id = await _pending_asset(factory)

    with patch("services.transcription.static_rendition_url", return_value=SIGNED_URL), \
         patch("services.transcription.transcribe_audio_url", new=AsyncMock(side_effect=RuntimeError("deepgram down"))):
        response = await client.post("/transcribe", json={"assetId": asset_id}, headers=auth_headers("user-1"))

    assert response.status_code == 202
    asset = await factory.get_asset(asset_id)
    assert asset.transcript_processing_status == "error"
    assert asset.transcript_error == "deepgram down"


@pytest.mark.asyncio
async def test_sentinel_without_playback_id_fails_cleanly(client, factory):
    asset_id = await _pending_asset(factory, mux_playback_id=None)

    response = await client.post("/transcribe", json={"assetId": asset_id}, headers=auth_headers("user-1"))

    assert response.status_code == 202
    asset = await factory.get_asset(asset_id)
    assert asset.transcript_processing_status == "error"
    assert "playback id" in asset.transcript_error


def test_parse_deepgram_response_prefers_timestamped_paragraphs():
    payload = {
        "results": {
            "channels": [
                {
                    "alternatives": [
                        {
                            "transcript": "here is the laptop and the sofa",
                            "paragraphs": {
                                "paragraphs": [
                                    {"start": 2.0, "end": 4.0, "sentences": [{"text": "Here is the sofa."}]},
                                    {"start": 12.34, "end": 14.0, "sentences": [{"text": "And the laptop."}]},
                                ]
                            },
                        }
                    ]
                }
            ]
        }
    }
    result = parse_deepgram_response(payload)
    assert result.text == "[2.0s] Here is the sofa.\n[12.3s] And the laptop."
    assert len(result.paragraphs) == 2

    bare = parse_deepgram_response({"results": {"channels": [{"alternatives": [{"transcript": "just words"}]}]}})
    assert bare.text == "just words"

    with pytest.raises(ValueError):
        parse_deepgram_response({"results": {"channels": []}})


@pytest.mark.asyncio
async def test_late_failure_does_not_regress_completed_transcript(factory, session_maker):
    asset_id = await _pending_asset(
        factory, transcript_processing_status="processing", mux_audio_url="https://cdn.example.com/audio.m4a"
    )

    async def newer_run_wins_then_fail(*args, **kwargs):
        async with session_maker() as db:
            await db.execute(
                update(Asset)
                .where(Asset.id == asset_id)
                .values(transcript_processing_status="completed", transcript_text="done")
            )
            await db.commit()
        raise RuntimeError("connection reset")

    with patch("services.transcription.transcribe_audio_url", new=newer_run_wins_then_fail):
        assert await run_transcription(asset_id) == "stale"

    asset = await factory.get_asset(asset_id)
    assert asset.transcript_processing_status == "completed"
    assert asset.transcript_text == "done"
    assert asset.transcript_error is None


@pytest.mark.asyncio
async def test_late_result_after_sweep_error_is_discarded(factory, session_maker):
    asset_id = await _pending_asset(
        factory, transcript_processing_status="processing", mux_audio_url="https://cdn.example.com/audio.m4a"
    )

    async def swept_while_running(*args, **kwargs):
        async with session_maker() as db:
            await db.execute(
                update(Asset)
                .where(Asset.id == asset_id)
                .values(transcript_processing_status="error", transcript_error="interrupted")
            )
            await db.commit()
        return TRANSCRIPT

    with patch("services.transcription.transcribe_audio_url", new=swept_while_running):
        assert await run_transcription(asset_id) == "stale"

    asset = await factory.get_asset(asset_id)
    assert asset.transcript_processing_status == "error"
    assert asset.transcript_text is None
