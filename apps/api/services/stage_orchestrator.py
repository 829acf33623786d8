"""Trigger downstream pipeline stages and recover assets that stalled between them."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Coroutine, Dict, List, Set

import httpx
from sqlalchemy import and_, or_, update
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.asset import Asset
from models.scratch_item import ScratchItem
from services import realtime
from services.merge_engine import MergeError, merge_asset
from services.session_token import create_session_token
from services.stage_queue import enqueue_merge_job, enqueue_transcription_job

logger = logging.getLogger(__name__)

DISPATCHED = "dispatched"
SKIPPED = "skipped"
FAILED = "failed"

STALLED_PROCESSING_MESSAGE = "Transcription was interrupted. It will restart on the next audio event or manual retry."

_background_tasks: Set[asyncio.Task] = set()


def _spawn(coro: Coroutine[Any, Any, Any], label: str) -> None:
    task = asyncio.get_running_loop().create_task(coro)
    _background_tasks.add(task)

    def _done(finished: asyncio.Task) -> None:
        _background_tasks.discard(finished)
        if not finished.cancelled() and finished.exception() is not None:
            logger.error("Background %s failed: %s", label, finished.exception())

    task.add_done_callback(_done)


def schedule_transcription(asset_id: str) -> str:
    """Hand the transcription stage off without blocking the caller."""
    if settings.STAGE_QUEUE_ENABLED:
        try:
            job = enqueue_transcription_job(asset_id)
            logger.info("Queued transcription for asset %s as %s", asset_id, job.id)
            return "queued"
        except Exception as exc:
            logger.warning("Stage queue unavailable (%s); dispatching transcription in-process", exc)
    _spawn(request_transcription(asset_id), f"transcription dispatch for {asset_id}")
    return "inline"


def schedule_merge(asset_id: str) -> str:
    """Hand the merge stage off without blocking the caller."""
    if settings.STAGE_QUEUE_ENABLED:
        try:
            job = enqueue_merge_job(asset_id)
            logger.info("Queued merge for asset %s as %s", asset_id, job.id)
            return "queued"
        except Exception as exc:
            logger.warning("Stage queue unavailable (%s); running merge in-process", exc)
    _spawn(run_merge(asset_id), f"merge for {asset_id}")
    return "inline"


async def request_transcription(asset_id: str) -> str:
    """
    POST the asset to the transcription collaborator.

    The transcript status is re-read right before the call; anything other
    than `pending` means another dispatch already took it or it finished.
    """
    async with async_session_maker() as db:
        result = await db.execute(select(Asset).where(Asset.id == asset_id))
        asset = result.scalar_one_or_none()
        if asset is None:
            logger.warning("Transcription dispatch: asset %s not found", asset_id)
            return SKIPPED
        status = asset.transcript_processing_status
        user_id = asset.user_id

    if status != "pending":
        logger.info("Transcription dispatch for %s skipped; status is %s", asset_id, status)
        return SKIPPED

    url = f"{settings.SITE_URL.rstrip('/')}/transcribe"
    token = create_session_token(user_id)["token"]
    try:
        async with httpx.AsyncClient(timeout=settings.COLLABORATOR_TIMEOUT_SECONDS) as client:
            response = await client.post(
                url,
                json={"assetId": asset_id},
                headers={"Authorization": f"Bearer {token}"},
            )
    except httpx.TimeoutException:
        logger.warning("Transcription request for %s timed out after %ss", asset_id, settings.COLLABORATOR_TIMEOUT_SECONDS)
        return FAILED
    except httpx.HTTPError as exc:
        logger.error("Transcription request for %s failed: %s", asset_id, exc)
        return FAILED

    if response.status_code >= 400:
        logger.error(
            "Transcription collaborator rejected %s: %s %s",
            asset_id,
            response.status_code,
            response.text[:300],
        )
        return FAILED

    logger.info("Transcription requested for asset %s", asset_id)
    return DISPATCHED


async def run_merge(asset_id: str) -> str:
    """Merge transcript and scratch items for a source video that has not been merged yet."""
    async with async_session_maker() as db:
        result = await db.execute(select(Asset).where(Asset.id == asset_id))
        asset = result.scalar_one_or_none()
        if asset is None:
            logger.warning("Merge: asset %s not found", asset_id)
            return SKIPPED
        if asset.is_processed:
            logger.info("Merge for %s skipped; asset already processed", asset_id)
            return SKIPPED
        try:
            outcome = await merge_asset(db, user_id=asset.user_id, asset_id=asset.id)
        except MergeError as exc:
            logger.error("Merge for %s failed: %s", asset_id, exc)
            return FAILED
    logger.info("Merged %s items for asset %s", len(outcome.items), asset_id)
    return DISPATCHED


def run_transcription_job(asset_id: str) -> str:
    """RQ worker entrypoint. Raises so RQ retries transient failures."""
    outcome = asyncio.run(request_transcription(asset_id))
    if outcome == FAILED:
        raise RuntimeError(f"Transcription dispatch failed for asset {asset_id}")
    return outcome


def run_merge_job(asset_id: str) -> str:
    """RQ worker entrypoint for merges."""
    outcome = asyncio.run(run_merge(asset_id))
    if outcome == FAILED:
        raise RuntimeError(f"Merge failed for asset {asset_id}")
    return outcome


async def sweep_stalled_assets(threshold_minutes: int = 30) -> Dict[str, List[str]]:
    """
    Find source videos stuck between stages and move them along.

    - `pending` past the threshold: transcription is dispatched again.
    - `processing` past the threshold: marked `error` so the UI shows it.
    - `completed` but never merged while scratch items exist: merge again.
    """
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(threshold_minutes, 1))
    summary: Dict[str, List[str]] = {"transcribe": [], "errored": [], "merge": []}

    async with async_session_maker() as db:
        result = await db.execute(
            select(Asset).where(
                Asset.media_type == "video",
                or_(
                    Asset.transcript_processing_status.in_(("pending", "processing")),
                    and_(Asset.transcript_processing_status == "completed", Asset.is_processed.is_(False)),
                ),
                Asset.updated_at < cutoff,
            )
        )
        stale = result.scalars().all()

        changed = []
        for asset in stale:
            status = asset.transcript_processing_status
            if status == "pending":
                summary["transcribe"].append(asset.id)
            elif status == "processing":
                update_result = await db.execute(
                    update(Asset)
                    .where(Asset.id == asset.id, Asset.transcript_processing_status == "processing")
                    .values(transcript_processing_status="error", transcript_error=STALLED_PROCESSING_MESSAGE)
                    .execution_options(synchronize_session=False)
                )
                if update_result.rowcount:
                    summary["errored"].append(asset.id)
                    changed.append((asset.user_id, asset.id))
            elif status == "completed" and not asset.is_processed and asset.mux_asset_id:
                scratch = await db.execute(
                    select(ScratchItem.id)
                    .where(ScratchItem.user_id == asset.user_id, ScratchItem.mux_asset_id == asset.mux_asset_id)
                    .limit(1)
                )
                if scratch.scalar_one_or_none() is not None:
                    summary["merge"].append(asset.id)
        if changed:
            await db.commit()

    for user_id, asset_id in changed:
        await realtime.publish_asset_change(
            user_id,
            asset_id,
            "UPDATE",
            {"transcript_processing_status": "error", "transcript_error": STALLED_PROCESSING_MESSAGE},
        )
    for asset_id in summary["transcribe"]:
        schedule_transcription(asset_id)
    for asset_id in summary["merge"]:
        schedule_merge(asset_id)
    return summary
