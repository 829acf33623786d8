"""Asset read endpoints and the realtime change stream."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import selectinload

from config import settings
from database import get_db
from models.asset import Asset
from routers.auth_scope import AuthContext, get_auth_context
from services.realtime import stream_asset_changes

router = APIRouter()


class AssetResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    media_type: str
    media_url: str
    is_source_video: bool
    source_video_id: Optional[str] = None
    item_timestamp: Optional[float] = None
    estimated_value: Optional[float] = None
    is_processed: bool
    room: Optional[str] = None
    tags: List[str] = []
    mux_asset_id: Optional[str] = None
    mux_processing_status: Optional[str] = None
    mux_playback_id: Optional[str] = None
    transcript_processing_status: Optional[str] = None
    transcript_error: Optional[str] = None
    stuck: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_stuck(asset: Asset, now: Optional[datetime] = None) -> bool:
    """Non-terminal processing state older than the stall threshold."""
    in_flight = asset.mux_processing_status == "preparing" or asset.transcript_processing_status in (
        "pending",
        "processing",
    )
    updated_at = _as_utc(asset.updated_at or asset.created_at)
    if not in_flight or updated_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    return now - updated_at > timedelta(minutes=max(int(settings.STALLED_ASSET_THRESHOLD_MINUTES), 1))


def _serialize(asset: Asset) -> AssetResponse:
    return AssetResponse(
        id=asset.id,
        name=asset.name,
        description=asset.description,
        media_type=asset.media_type,
        media_url=asset.media_url or "",
        is_source_video=bool(asset.is_source_video),
        source_video_id=asset.source_video_id,
        item_timestamp=asset.item_timestamp,
        estimated_value=asset.estimated_value,
        is_processed=bool(asset.is_processed),
        room=asset.room.name if asset.room else None,
        tags=sorted(tag.name for tag in asset.tags),
        mux_asset_id=asset.mux_asset_id,
        mux_processing_status=asset.mux_processing_status,
        mux_playback_id=asset.mux_playback_id,
        transcript_processing_status=asset.transcript_processing_status,
        transcript_error=asset.transcript_error,
        stuck=is_stuck(asset),
        created_at=asset.created_at.isoformat() if asset.created_at else None,
        updated_at=asset.updated_at.isoformat() if asset.updated_at else None,
    )


@router.get("", response_model=List[AssetResponse])
async def list_assets(
    media_type: Optional[str] = Query(default=None),
    source_video_id: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    query = select(Asset).options(selectinload(Asset.room)).where(Asset.user_id == auth.user_id)
    if media_type:
        query = query.where(Asset.media_type == media_type)
    if source_video_id:
        query = query.where(Asset.source_video_id == source_video_id)
    result = await db.execute(query.order_by(Asset.created_at.desc()).limit(limit))
    return [_serialize(asset) for asset in result.scalars().all()]


@router.get("/changes")
async def asset_changes(auth: AuthContext = Depends(get_auth_context)):
    """Server-sent events for the caller's asset inserts, updates and deletes."""
    if not settings.REALTIME_ENABLED:
        raise HTTPException(status_code=503, detail="Realtime updates are disabled.")
    return StreamingResponse(
        stream_asset_changes(auth.user_id),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/{asset_id}", response_model=AssetResponse)
async def get_asset(
    asset_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Asset).options(selectinload(Asset.room)).where(Asset.id == asset_id, Asset.user_id == auth.user_id)
    )
    asset = result.scalar_one_or_none()
    if asset is None:
        raise HTTPException(status_code=404, detail="Asset not found")
    return _serialize(asset)
