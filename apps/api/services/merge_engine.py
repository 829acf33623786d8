"""Merge a source video's transcript with its scratch items into inventory rows."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.asset import Asset
from models.room import Room
from models.scratch_item import ScratchItem
from models.tag import Tag
from multimodal.llm import build_merge_prompt, request_item_extraction
from multimodal.models import MergedItem
from services import realtime
from services.merge_output import (
    RecoveryStage,
    ScratchCandidate,
    parse_merge_output,
    reconcile_items,
)

logger = logging.getLogger(__name__)


class MergeError(Exception):
    """Merge failure carrying the HTTP status the router should answer with."""

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class MergeOutcome:
    asset_id: str
    items: List[MergedItem] = field(default_factory=list)
    recovery: str = ""
    created_item_ids: List[str] = field(default_factory=list)
    scratch_items_deleted: int = 0


async def load_source_asset(
    db: AsyncSession,
    user_id: str,
    asset_id: Optional[str] = None,
    mux_asset_id: Optional[str] = None,
) -> Asset:
    if not user_id or not (asset_id or mux_asset_id):
        raise MergeError("Missing required fields: user_id and either asset_id or mux_asset_id", 400)

    query = select(Asset).where(Asset.user_id == user_id)
    if asset_id:
        query = query.where(Asset.id == asset_id)
    else:
        query = query.where(Asset.mux_asset_id == mux_asset_id, Asset.media_type != "item")
    result = await db.execute(query.order_by(Asset.created_at.asc()).limit(1))
    asset = result.scalar_one_or_none()
    if asset is None:
        raise MergeError("Asset not found or does not belong to user", 404)
    return asset


async def load_scratch_items(db: AsyncSession, user_id: str, mux_asset_id: Optional[str]) -> List[ScratchCandidate]:
    if not mux_asset_id:
        return []
    result = await db.execute(
        select(ScratchItem)
        .where(ScratchItem.user_id == user_id, ScratchItem.mux_asset_id == mux_asset_id)
        .order_by(ScratchItem.video_timestamp.asc(), ScratchItem.created_at.asc())
    )
    return [
        ScratchCandidate(
            name=row.name,
            description=row.description or "",
            timestamp=row.video_timestamp,
            estimated_value=row.estimated_value,
        )
        for row in result.scalars().all()
    ]


async def _user_tags(db: AsyncSession, user_id: str) -> Dict[str, Tag]:
    result = await db.execute(select(Tag).where(Tag.user_id == user_id).order_by(Tag.name.asc()))
    return {tag.name.strip().lower(): tag for tag in result.scalars().all()}


async def _user_rooms(db: AsyncSession, user_id: str) -> Dict[str, Room]:
    result = await db.execute(select(Room).where(Room.user_id == user_id).order_by(Room.name.asc()))
    return {room.name.strip().lower(): room for room in result.scalars().all()}


def _room_for(name: Optional[str], rooms: Dict[str, Room], user_id: str, db: AsyncSession) -> Optional[Room]:
    cleaned = (name or "").strip()
    if not cleaned:
        return None
    room = rooms.get(cleaned.lower())
    if room is None:
        room = Room(user_id=user_id, name=cleaned)
        db.add(room)
        rooms[cleaned.lower()] = room
        logger.info("Created room %r for user %s during merge", cleaned, user_id)
    return room


async def merge_asset(
    db: AsyncSession,
    *,
    user_id: str,
    asset_id: Optional[str] = None,
    mux_asset_id: Optional[str] = None,
    transcript: Optional[str] = None,
) -> MergeOutcome:
    """
    Produce the final item list for one source video and persist it.

    Items from an earlier merge of the same video are replaced, so running
    the merge again does not duplicate inventory.
    """
    asset = await load_source_asset(db, user_id, asset_id=asset_id, mux_asset_id=mux_asset_id)
    source_id = asset.id
    source_mux_id = asset.mux_asset_id
    playback_id = asset.mux_playback_id
    transcript = (transcript or "").strip() or (asset.transcript_text or "").strip() or None

    scratch = await load_scratch_items(db, user_id, source_mux_id)
    tags = await _user_tags(db, user_id)
    rooms = await _user_rooms(db, user_id)
    logger.info(
        "Merging asset %s: transcript=%s chars, %s scratch items, %s tags, %s rooms",
        source_id,
        len(transcript or ""),
        len(scratch),
        len(tags),
        len(rooms),
    )

    prompt = build_merge_prompt(
        transcript,
        [item.as_prompt_item() for item in scratch],
        [tag.name for tag in tags.values()],
        [room.name for room in rooms.values()],
    )
    try:
        raw = await request_item_extraction(
            prompt,
            api_key=settings.OPENAI_API_KEY,
            model=settings.AI_MODEL,
            base_url=settings.OPENAI_BASE_URL or None,
            timeout=settings.AI_REQUEST_TIMEOUT_SECONDS,
        )
    except Exception as exc:
        raise MergeError(f"AI merge request failed: {exc}", 500) from exc

    if raw is None and not scratch:
        raise MergeError("AI model is not configured and there are no scratch items to fall back on", 500)

    parsed, recovery = parse_merge_output(raw, scratch)
    items = reconcile_items(parsed, scratch)
    if not items and recovery == RecoveryStage.SCRATCH and raw is not None:
        raise MergeError("AI output could not be parsed and there are no scratch items to fall back on", 500)
    logger.info("Merge for asset %s produced %s items (recovery=%s)", source_id, len(items), recovery)

    previous = await db.execute(
        select(Asset.id).where(Asset.source_video_id == source_id, Asset.media_type == "item")
    )
    replaced_ids = list(previous.scalars().all())
    replaced = await db.execute(
        delete(Asset)
        .where(Asset.source_video_id == source_id, Asset.media_type == "item")
        .execution_options(synchronize_session=False)
    )
    if replaced.rowcount:
        logger.info("Replacing %s items from an earlier merge of %s", replaced.rowcount, source_id)

    created: List[Asset] = []
    for item in items:
        item_tags = [tags[name.strip().lower()] for name in item.tag_names if name.strip().lower() in tags]
        unknown = [name for name in item.tag_names if name.strip().lower() not in tags]
        if unknown:
            logger.info("Dropping tags outside the user's vocabulary for %r: %s", item.name, unknown)
        room = _room_for(item.room_name, rooms, user_id, db)
        row = Asset(
            user_id=user_id,
            name=item.name or "Unnamed Item",
            description=item.description or "",
            media_type="item",
            media_url="",
            is_source_video=False,
            source_video_id=source_id,
            item_timestamp=item.timestamp,
            mux_playback_id=playback_id,
            mux_asset_id=source_mux_id,
            estimated_value=item.estimated_value,
            room=room,
            tags=item_tags,
        )
        db.add(row)
        created.append(row)

    asset.is_processed = True
    await db.flush()
    created_ids = [row.id for row in created]

    deleted = 0
    if settings.DELETE_SCRATCH_ITEMS_AFTER_MERGE and scratch:
        result = await db.execute(
            delete(ScratchItem)
            .where(ScratchItem.user_id == user_id, ScratchItem.mux_asset_id == source_mux_id)
            .execution_options(synchronize_session=False)
        )
        deleted = int(result.rowcount or 0)
        logger.info("Deleted %s scratch items after merging %s", deleted, source_id)

    await db.commit()

    for item_id in replaced_ids:
        await realtime.publish_asset_change(user_id, item_id, "DELETE", {"source_video_id": source_id})
    for item_id in created_ids:
        await realtime.publish_asset_change(user_id, item_id, "INSERT", {"source_video_id": source_id})
    await realtime.publish_asset_change(user_id, source_id, "UPDATE", {"is_processed": True})

    return MergeOutcome(
        asset_id=source_id,
        items=items,
        recovery=recovery,
        created_item_ids=created_ids,
        scratch_items_deleted=deleted,
    )

