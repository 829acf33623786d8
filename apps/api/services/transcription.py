"""Transcription collaborator: audio rendition → Deepgram → asset transcript fields."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.asset import Asset
from models.scratch_item import ScratchItem
from multimodal.audio import transcribe_audio_url
from services import realtime, stage_orchestrator
from services.mux import MuxApiError, is_pending_audio_url, parse_pending_audio_url, static_rendition_url

logger = logging.getLogger(__name__)

CLAIMABLE_STATUSES = ("pending", "error")


class TranscriptionError(Exception):
    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


async def claim_transcription(db: AsyncSession, asset_id: str, user_id: str) -> Asset:
    """
    Move an owned asset to `processing`.

    Only one caller wins the claim; a second concurrent request gets 409.
    """
    result = await db.execute(select(Asset).where(Asset.id == asset_id, Asset.user_id == user_id))
    asset = result.scalar_one_or_none()
    if asset is None:
        raise TranscriptionError("Asset not found", 404)
    if not asset.mux_audio_url:
        raise TranscriptionError("Asset has no audio URL for transcription", 400)

    status = asset.transcript_processing_status
    if status == "processing":
        raise TranscriptionError("Transcription already in progress", 409)
    if status == "completed":
        raise TranscriptionError("Asset already transcribed", 409)

    claimed = await db.execute(
        update(Asset)
        .where(
            Asset.id == asset_id,
            (Asset.transcript_processing_status.in_(CLAIMABLE_STATUSES))
            | (Asset.transcript_processing_status.is_(None)),
        )
        .values(transcript_processing_status="processing", transcript_error=None)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        await db.rollback()
        raise TranscriptionError("Transcription already in progress", 409)
    await db.commit()
    await realtime.publish_asset_change(user_id, asset_id, "UPDATE", {"transcript_processing_status": "processing"})
    return asset


def resolve_audio_url(audio_url: str, playback_id: Optional[str]) -> str:
    """Swap the pending sentinel for a signed static rendition URL."""
    if not is_pending_audio_url(audio_url):
        return audio_url
    pending = parse_pending_audio_url(audio_url)
    if pending is None:
        raise TranscriptionError(f"Invalid pending audio URL: {audio_url}", 500)
    if not playback_id:
        raise TranscriptionError("Asset has no playback id for its audio rendition", 500)
    try:
        return static_rendition_url(playback_id, pending.rendition_name)
    except MuxApiError as exc:
        raise TranscriptionError(f"Failed to get static rendition URL: {exc}", 500) from exc


async def _fail(asset_id: str, user_id: str, message: str) -> bool:
    async with async_session_maker() as db:
        failed = await db.execute(
            update(Asset)
            .where(Asset.id == asset_id, Asset.transcript_processing_status == "processing")
            .values(transcript_processing_status="error", transcript_error=message[:1000])
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        updated = failed.rowcount
    if updated != 1:
        logger.warning("Transcription failure for asset %s discarded; asset is no longer processing", asset_id)
        return False
    await realtime.publish_asset_change(
        user_id, asset_id, "UPDATE", {"transcript_processing_status": "error", "transcript_error": message[:1000]}
    )
    return True


async def run_transcription(asset_id: str) -> str:
    """Background task started after a successful claim. Returns the final status."""
    async with async_session_maker() as db:
        result = await db.execute(select(Asset).where(Asset.id == asset_id))
        asset = result.scalar_one_or_none()
        if asset is None:
            logger.warning("Transcription: asset %s disappeared", asset_id)
            return "missing"
        user_id = asset.user_id
        audio_url = asset.mux_audio_url or ""
        playback_id = asset.mux_playback_id
        mux_asset_id = asset.mux_asset_id
        is_processed = bool(asset.is_processed)

    try:
        resolved_url = resolve_audio_url(audio_url, playback_id)
        transcript = await transcribe_audio_url(
            resolved_url,
            api_key=settings.DEEPGRAM_API_KEY,
            model=settings.DEEPGRAM_MODEL,
            api_url=settings.DEEPGRAM_API_URL,
        )
    except Exception as exc:
        logger.error("Transcription for asset %s failed: %s", asset_id, exc)
        if not await _fail(asset_id, user_id, str(exc) or exc.__class__.__name__):
            return "stale"
        return "error"

    async with async_session_maker() as db:
        stored = await db.execute(
            update(Asset)
            .where(Asset.id == asset_id, Asset.transcript_processing_status == "processing")
            .values(
                mux_audio_url=resolved_url,
                transcript=transcript.model_dump(),
                transcript_text=transcript.text,
                transcript_processing_status="completed",
                transcript_error=None,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if stored.rowcount != 1:
            logger.warning("Transcript for asset %s discarded; asset is no longer processing", asset_id)
            return "stale"

        scratch_count = 0
        if mux_asset_id and not is_processed:
            count = await db.execute(
                select(func.count(ScratchItem.id)).where(
                    ScratchItem.user_id == user_id, ScratchItem.mux_asset_id == mux_asset_id
                )
            )
            scratch_count = int(count.scalar() or 0)

    logger.info("Transcript completed for asset %s (%s chars)", asset_id, len(transcript.text))
    await realtime.publish_asset_change(
        user_id, asset_id, "UPDATE", {"transcript_processing_status": "completed"}
    )

    if scratch_count:
        stage_orchestrator.schedule_merge(asset_id)
    return "completed"
