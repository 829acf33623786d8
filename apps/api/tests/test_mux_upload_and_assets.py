from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import AsyncMock, patch

from conftest import auth_headers
from models.asset import Asset
from routers.assets import is_stuck
from services.mux import DirectUpload, MuxApiError


@pytest.mark.asyncio
async def test_upload_creates_placeholder_keyed_by_upload_id(client, factory):
    upload = DirectUpload(upload_id="up-1", upload_url="https://storage.example/up-1", correlation_id="corr-1")
    with patch("routers.mux.create_direct_upload", new=AsyncMock(return_value=upload)) as create:
        response = await client.post(
            "/mux/upload",
            json={"correlation_id": "corr-1", "name": "Kitchen walkthrough"},
            headers=auth_headers("user-1"),
        )

    assert response.status_code == 200
    body = response.json()
    assert body["upload_url"] == "https://storage.example/up-1"
    create.assert_awaited_once_with("corr-1")

    asset = await factory.get_asset(body["asset_id"])
    assert (asset.mux_asset_id, asset.mux_upload_id, asset.mux_correlation_id) == ("up-1", "up-1", "corr-1")
    assert (asset.media_type, asset.is_source_video, asset.mux_processing_status) == ("video", True, "preparing")
    assert asset.name == "Kitchen walkthrough"


@pytest.mark.asyncio
async def test_upload_generates_correlation_id_and_maps_provider_errors(client):
    upload = DirectUpload(upload_id="up-2", upload_url="https://storage.example/up-2", correlation_id="x")
    with patch("routers.mux.create_direct_upload", new=AsyncMock(return_value=upload)) as create:
        response = await client.post("/mux/upload", json={}, headers=auth_headers("user-1"))
    assert response.status_code == 200
    assert response.json()["correlation_id"] == create.await_args.args[0]
    assert len(response.json()["correlation_id"]) == 36

    with patch("routers.mux.create_direct_upload", new=AsyncMock(side_effect=MuxApiError("401 from Mux"))):
        failed = await client.post("/mux/upload", json={}, headers=auth_headers("user-1"))
    assert failed.status_code == 502
    assert "401 from Mux" not in failed.text


@pytest.mark.asyncio
async def test_assets_are_scoped_to_owner_and_flag_stuck_processing(client, factory):
    stuck_id = await factory.asset(transcript_processing_status="processing")
    await factory.age(stuck_id, minutes=120)
    fresh_id = await factory.asset(transcript_processing_status="pending")
    await factory.asset(user_id="someone-else")

    listing = await client.get("/assets", headers=auth_headers("user-1"))
    assert listing.status_code == 200
    flags = {row["id"]: row["stuck"] for row in listing.json()}
    assert flags == {stuck_id: True, fresh_id: False}

    single = await client.get(f"/assets/{stuck_id}", headers=auth_headers("user-1"))
    assert single.json()["transcript_processing_status"] == "processing"

    hidden = await client.get(f"/assets/{stuck_id}", headers=auth_headers("someone-else"))
    assert hidden.status_code == 404


@pytest.mark.asyncio
async def test_change_stream_unavailable_when_realtime_disabled(client):
    response = await client.get("/assets/changes", headers=auth_headers("user-1"))
    assert response.status_code == 503


def test_terminal_states_are_never_stuck():
    old = datetime.now(timezone.utc) - timedelta(days=2)
    assert not is_stuck(Asset(mux_processing_status="ready", transcript_processing_status="completed", updated_at=old))
    assert not is_stuck(Asset(mux_processing_status="error", updated_at=old))
    assert is_stuck(Asset(mux_processing_status="preparing", updated_at=old))
