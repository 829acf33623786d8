import asyncio

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from config import settings
from services import stage_orchestrator
from services.merge_engine import MergeError, MergeOutcome
from services.session_token import decode_session_token


class FakeCollaborator:
    """Stands in for httpx.AsyncClient inside the orchestrator."""

    calls = []
    response_status = 202
    error = None

    def __init__(self, *args, **kwargs):
        self.kwargs = kwargs

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def post(self, url, json=None, headers=None):
        FakeCollaborator.calls.append({"url": url, "json": json, "headers": headers, "timeout": self.kwargs.get("timeout")})
        if FakeCollaborator.error is not None:
            raise FakeCollaborator.error
        return httpx.Response(FakeCollaborator.response_status, json={}, request=httpx.Request("POST", url))


@pytest.fixture
def collaborator():
    FakeCollaborator.calls = []
    FakeCollaborator.response_status = 202
    FakeCollaborator.error = None
    with patch("services.stage_orchestrator.httpx.AsyncClient", FakeCollaborator):
        yield FakeCollaborator


@pytest.mark.asyncio
async def test_request_transcription_posts_asset_id_with_owner_token(factory, collaborator):
    asset_id = await factory.asset(transcript_processing_status="pending", mux_audio_url="pending:a/r/audio.m4a")

    assert await stage_orchestrator.request_transcription(asset_id) == stage_orchestrator.DISPATCHED

    call = collaborator.calls[0]
    assert call["url"] == f"{settings.SITE_URL.rstrip('/')}/transcribe"
    assert call["json"] == {"assetId": asset_id}
    assert call["timeout"] == settings.COLLABORATOR_TIMEOUT_SECONDS
    token = call["headers"]["Authorization"].split(" ", 1)[1]
    assert decode_session_token(token)["sub"] == "user-1"


@pytest.mark.asyncio
async def test_request_transcription_rechecks_status_before_dispatch(factory, collaborator):
    for status in (None, "processing", "completed", "error"):
        asset_id = await factory.asset(transcript_processing_status=status)
        assert await stage_orchestrator.request_transcription(asset_id) == stage_orchestrator.SKIPPED
    assert await stage_orchestrator.request_transcription("missing-asset") == stage_orchestrator.SKIPPED
    assert collaborator.calls == []


@pytest.mark.asyncio
async def test_request_transcription_reports_timeouts_and_rejections(factory, collaborator):
    asset_id = await factory.asset(transcript_processing_status="pending")

    collaborator.error = httpx.ReadTimeout("slow")
    assert await stage_orchestrator.request_transcription(asset_id) == stage_orchestrator.FAILED

    collaborator.error = None
    collaborator.response_status = 500
    assert await stage_orchestrator.request_transcription(asset_id) == stage_orchestrator.FAILED


def test_rq_entrypoints_raise_on_failure_so_rq_retries():
    with patch("services.stage_orchestrator.request_transcription", new=AsyncMock(return_value="failed")):
        with pytest.raises(RuntimeError):
            stage_orchestrator.run_transcription_job("asset-1")
    with patch("services.stage_orchestrator.request_transcription", new=AsyncMock(return_value="skipped")):
        assert stage_orchestrator.run_transcription_job("asset-1") == "skipped"
    with patch("services.stage_orchestrator.run_merge", new=AsyncMock(return_value="failed")):
        with pytest.raises(RuntimeError):
            stage_orchestrator.run_merge_job("asset-1")


@pytest.mark.asyncio
async def test_schedule_uses_queue_when_enabled(monkeypatch):
    monkeypatch.setattr(settings, "STAGE_QUEUE_ENABLED", True)
    job = MagicMock(id="transcribe:asset-1")

    with patch("services.stage_orchestrator.enqueue_transcription_job", return_value=job) as enqueue, \
         patch("services.stage_orchestrator.request_transcription", new=AsyncMock()) as inline:
        assert stage_orchestrator.schedule_transcription("asset-1") == "queued"

    enqueue.assert_called_once_with("asset-1")
    inline.assert_not_called()


@pytest.mark.asyncio
async def test_schedule_falls_back_to_in_process_task_when_queue_is_down(monkeypatch):
    monkeypatch.setattr(settings, "STAGE_QUEUE_ENABLED", True)

    with patch("services.stage_orchestrator.enqueue_merge_job", side_effect=ConnectionError("redis down")), \
         patch("services.stage_orchestrator.run_merge", new=AsyncMock(return_value="dispatched")) as inline:
        assert stage_orchestrator.schedule_merge("asset-2") == "inline"
        await asyncio.gather(*list(stage_orchestrator._background_tasks))

    inline.assert_awaited_once_with("asset-2")
    assert not stage_orchestrator._background_tasks


@pytest.mark.asyncio
async def test_run_merge_skips_processed_assets_and_reports_failures(factory):
    processed = await factory.asset(is_processed=True)
    pending = await factory.asset(mux_asset_id="mux-m")

    outcome = MergeOutcome(asset_id=pending)
    with patch("services.stage_orchestrator.merge_asset", new=AsyncMock(return_value=outcome)) as merge:
        assert await stage_orchestrator.run_merge(processed) == stage_orchestrator.SKIPPED
        assert await stage_orchestrator.run_merge(pending) == stage_orchestrator.DISPATCHED
    assert merge.await_count == 1
    assert merge.await_args.kwargs["asset_id"] == pending

    with patch("services.stage_orchestrator.merge_asset", new=AsyncMock(side_effect=MergeError("bad output"))):
        assert await stage_orchestrator.run_merge(pending) == stage_orchestrator.FAILED


@pytest.mark.asyncio
async def test_sweep_moves_stalled_assets_along(factory):
    stale_pending = await factory.asset(mux_asset_id="m-1", transcript_processing_status="pending")
    stale_processing = await factory.asset(mux_asset_id="m-2", transcript_processing_status="processing")
    stale_completed = await factory.asset(mux_asset_id="m-3", transcript_processing_status="completed")
    merged_already = await factory.asset(mux_asset_id="m-4", transcript_processing_status="completed", is_processed=True)
    no_scratch = await factory.asset(mux_asset_id="m-5", transcript_processing_status="completed")
    fresh_pending = await factory.asset(mux_asset_id="m-6", transcript_processing_status="pending")
    await factory.scratch(mux_asset_id="m-3", name="Sofa")
    await factory.scratch(mux_asset_id="m-4", name="Chair")

    for asset_id in (stale_pending, stale_processing, stale_completed, merged_already, no_scratch):
        await factory.age(asset_id, minutes=90)

    with patch("services.stage_orchestrator.schedule_transcription") as schedule_transcription, \
         patch("services.stage_orchestrator.schedule_merge") as schedule_merge:
        summary = await stage_orchestrator.sweep_stalled_assets(threshold_minutes=30)

    assert summary == {"transcribe": [stale_pending], "errored": [stale_processing], "merge": [stale_completed]}
    schedule_transcription.assert_called_once_with(stale_pending)
    schedule_merge.assert_called_once_with(stale_completed)

    errored = await factory.get_asset(stale_processing)
    assert errored.transcript_processing_status == "error"
    assert errored.transcript_error == stage_orchestrator.STALLED_PROCESSING_MESSAGE
    assert (await factory.get_asset(fresh_pending)).transcript_processing_status == "pending"
