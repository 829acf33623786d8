import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.future import select

from config import settings
from database import Base, get_db
from main import app
from models.asset import Asset
from models.room import Room
from models.scratch_item import ScratchItem
from models.tag import Tag
from models.user import User
from models.webhook_event import WebhookEvent
from routers import rate_limit
from services.mux import sign_webhook_payload
from services.session_token import create_session_token

WEBHOOK_SECRET = "test-webhook-secret"

SESSION_MAKER_TARGETS = (
    "services.webhook_processor.async_session_maker",
    "services.stage_orchestrator.async_session_maker",
    "services.transcription.async_session_maker",
)


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def pipeline_settings(monkeypatch):
    """No Redis, no queue, no real collaborators."""
    monkeypatch.setattr(settings, "REALTIME_ENABLED", False)
    monkeypatch.setattr(settings, "STAGE_QUEUE_ENABLED", False)
    monkeypatch.setattr(settings, "MUX_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "MUX_WEBHOOK_VERIFY_SIGNATURE", True)
    monkeypatch.setattr(settings, "OPENAI_API_KEY", "")
    monkeypatch.setattr(settings, "DEEPGRAM_API_KEY", "")
    monkeypatch.setattr(settings, "DELETE_SCRATCH_ITEMS_AFTER_MERGE", False)
    monkeypatch.setattr(settings, "STALLED_ASSET_THRESHOLD_MINUTES", 30)


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "pipeline.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    patchers = [patch(target, maker) for target in SESSION_MAKER_TARGETS]
    for patcher in patchers:
        patcher.start()
    yield maker
    for patcher in patchers:
        patcher.stop()
    await engine.dispose()


@pytest_asyncio.fixture
async def client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
    app.dependency_overrides.pop(get_db, None)


def auth_headers(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_session_token(user_id)['token']}"}


class Factory:
    """Seed and inspect rows directly."""

    def __init__(self, session_maker):
        self.session_maker = session_maker

    async def user(self, user_id: str = "user-1") -> str:
        async with self.session_maker() as db:
            existing = await db.execute(select(User).where(User.id == user_id))
            if existing.scalar_one_or_none() is None:
                db.add(User(id=user_id, email=f"{user_id}@example.com"))
                await db.commit()
        return user_id

    async def asset(self, user_id: str = "user-1", **fields) -> str:
        await self.user(user_id)
        values = {
            "name": "Walkthrough",
            "media_type": "video",
            "is_source_video": True,
            "mux_processing_status": "preparing",
        }
        values.update(fields)
        async with self.session_maker() as db:
            asset = Asset(user_id=user_id, **values)
            db.add(asset)
            await db.commit()
            return asset.id

    async def scratch(self, user_id: str = "user-1", **fields) -> str:
        await self.user(user_id)
        async with self.session_maker() as db:
            item = ScratchItem(user_id=user_id, **fields)
            db.add(item)
            await db.commit()
            return item.id

    async def tag(self, name: str, user_id: str = "user-1") -> str:
        await self.user(user_id)
        async with self.session_maker() as db:
            tag = Tag(user_id=user_id, name=name)
            db.add(tag)
            await db.commit()
            return tag.id

    async def room(self, name: str, user_id: str = "user-1") -> str:
        await self.user(user_id)
        async with self.session_maker() as db:
            room = Room(user_id=user_id, name=name)
            db.add(room)
            await db.commit()
            return room.id

    async def get_asset(self, asset_id: str) -> Asset:
        async with self.session_maker() as db:
            result = await db.execute(select(Asset).where(Asset.id == asset_id))
            return result.scalar_one()

    async def items_for(self, source_id: str):
        async with self.session_maker() as db:
            result = await db.execute(
                select(Asset)
                .where(Asset.source_video_id == source_id, Asset.media_type == "item")
                .order_by(Asset.item_timestamp.asc())
            )
            return list(result.scalars().all())

    async def scratch_items(self, user_id: str = "user-1"):
        async with self.session_maker() as db:
            result = await db.execute(select(ScratchItem).where(ScratchItem.user_id == user_id))
            return list(result.scalars().all())

    async def events(self):
        async with self.session_maker() as db:
            result = await db.execute(select(WebhookEvent).order_by(WebhookEvent.created_at.asc()))
            return list(result.scalars().all())

    async def age(self, asset_id: str, minutes: int) -> None:
        """Backdate `updated_at` without tripping the onupdate default."""
        stamp = datetime.now(timezone.utc) - timedelta(minutes=minutes)
        async with self.session_maker() as db:
            await db.execute(
                Asset.__table__.update().where(Asset.id == asset_id).values(updated_at=stamp)
            )
            await db.commit()


@pytest.fixture
def factory(session_maker):
    return Factory(session_maker)


@pytest.fixture
def send_webhook(client):
    async def _send(payload: dict, secret: str = WEBHOOK_SECRET, signature: str = None):
        body = json.dumps(payload).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if signature is None and secret:
            signature = sign_webhook_payload(body, secret)
        if signature:
            headers["Mux-Signature"] = signature
        return await client.post("/mux/webhook", content=body, headers=headers)

    return _send


def upload_created_event(event_id: str, upload_id: str, asset_id: str, correlation_id: str = None) -> dict:
    data = {"id": upload_id, "asset_id": asset_id, "status": "asset_created"}
    if correlation_id:
        data["new_asset_settings"] = {"passthrough": correlation_id}
    return {"type": "video.upload.asset_created", "id": event_id, "data": data}


def asset_ready_event(event_id: str, asset_id: str, playback_id: str = "play-1", correlation_id: str = None, upload_id: str = None) -> dict:
    data = {
        "id": asset_id,
        "status": "ready",
        "duration": 42.5,
        "aspect_ratio": "9:16",
        "max_stored_resolution": "HD",
        "playback_ids": [{"id": playback_id, "policy": "signed"}] if playback_id else [],
    }
    if correlation_id:
        data["passthrough"] = correlation_id
    if upload_id:
        data["upload_id"] = upload_id
    return {"type": "video.asset.ready", "id": event_id, "data": data}


def rendition_ready_event(event_id: str, asset_id: str, name: str = "audio.m4a", rendition_id: str = "rend-1",
                          event_type: str = "video.asset.static_rendition.ready") -> dict:
    return {
        "type": event_type,
        "id": event_id,
        "data": {"id": rendition_id, "asset_id": asset_id, "name": name, "status": "ready", "resolution": "audio-only"},
    }
