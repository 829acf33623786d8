"""Apply Mux webhook events to local assets."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from pydantic import ValidationError
from sqlalchemy import and_, func, or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import async_session_maker
from models.asset import Asset
from models.scratch_item import ScratchItem
from services import event_store, realtime, stage_orchestrator
from services.asset_state import (
    AssetSnapshot,
    Decision,
    EventContext,
    Outcome,
    SideEffect,
    decide,
)
from services.identity_resolver import resolve_asset
from services.mux_events import (
    AssetData,
    EventIdentifiers,
    EventKind,
    MuxWebhookEvent,
    extract_identifiers,
    parse_rendition,
)

logger = logging.getLogger(__name__)

HANDLED_EVENT_TYPES = (
    "video.upload.asset_created",
    "video.asset.ready",
    "video.asset.errored",
    "video.asset.static_rendition.ready",
    "video.static_rendition.ready",
    "video.asset.static_renditions.ready",
)


@dataclass
class ProcessingResult:
    event_type: str
    outcome: str
    asset_id: Optional[str] = None
    strategy: Optional[str] = None
    transition: Optional[str] = None
    side_effect: str = SideEffect.NONE.value
    reason: str = ""


def build_context(event: MuxWebhookEvent, identifiers: EventIdentifiers) -> EventContext:
    kind = event.kind
    if kind in (EventKind.ASSET_READY, EventKind.ASSET_ERRORED):
        return EventContext(
            asset_id=identifiers.asset_id,
            upload_id=identifiers.upload_id,
            asset=AssetData.model_validate(event.data),
        )
    if kind == EventKind.RENDITION_READY:
        return EventContext(
            asset_id=identifiers.asset_id,
            upload_id=identifiers.upload_id,
            rendition=parse_rendition(event),
        )
    return EventContext(asset_id=identifiers.asset_id, upload_id=identifiers.upload_id)


async def _has_scratch_items(db: AsyncSession, asset: Asset) -> bool:
    if not asset.mux_asset_id:
        return False
    result = await db.execute(
        select(func.count(ScratchItem.id)).where(
            ScratchItem.user_id == asset.user_id,
            ScratchItem.mux_asset_id == asset.mux_asset_id,
        )
    )
    return int(result.scalar() or 0) > 0


async def apply_decision(db: AsyncSession, asset_id: str, decision: Decision) -> bool:
    """Conditional single-row UPDATE. Returns False when a precondition no longer holds."""
    stmt = update(Asset).where(Asset.id == asset_id)
    for column_name, allowed in decision.preconditions.items():
        column = getattr(Asset, column_name)
        clauses = []
        if None in allowed:
            clauses.append(column.is_(None))
        values = [value for value in allowed if value is not None]
        if values:
            clauses.append(column.in_(values))
        stmt = stmt.where(or_(*clauses))
    stmt = stmt.values(**decision.updates).execution_options(synchronize_session=False)
    result = await db.execute(stmt)
    return result.rowcount == 1


async def backfill_scratch_items(db: AsyncSession, asset: Asset, previous_id: Optional[str], new_id: str) -> int:
    """Point scratch items recorded against the placeholder at the real provider asset id."""
    matchers = []
    if previous_id:
        matchers.append(ScratchItem.mux_asset_id == previous_id)
    if asset.mux_correlation_id:
        matchers.append(
            and_(ScratchItem.mux_asset_id.is_(None), ScratchItem.correlation_id == asset.mux_correlation_id)
        )
    if not matchers:
        return 0
    result = await db.execute(
        update(ScratchItem)
        .where(ScratchItem.user_id == asset.user_id, or_(*matchers))
        .values(mux_asset_id=new_id)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


def _dispatch(side_effect: SideEffect, asset_id: str) -> None:
    if side_effect == SideEffect.TRANSCRIBE:
        stage_orchestrator.schedule_transcription(asset_id)
    elif side_effect == SideEffect.MERGE:
        stage_orchestrator.schedule_merge(asset_id)


async def process_event(
    db: AsyncSession,
    event: MuxWebhookEvent,
    record_id: Optional[str] = None,
) -> ProcessingResult:
    """
    Resolve the event's asset, run the matching transition and trigger its side effect.

    Never raises for expected conditions: an unresolved asset or a rejected
    transition leaves the stored event unprocessed for reconciliation.
    """
    kind = event.kind
    if kind == EventKind.IGNORED:
        logger.info("Ignoring Mux event type %s", event.type)
        await event_store.mark_processed(db, record_id)
        return ProcessingResult(event_type=event.type, outcome=Outcome.IGNORED.value, reason="unhandled event type")

    identifiers = extract_identifiers(event)
    try:
        ctx = build_context(event, identifiers)
    except ValidationError as exc:
        logger.warning("Malformed %s payload: %s", event.type, exc)
        await event_store.mark_unprocessed(db, record_id, error=f"malformed payload: {exc}")
        return ProcessingResult(event_type=event.type, outcome=Outcome.REJECTED.value, reason="malformed payload")

    try:
        resolution = await resolve_asset(db, identifiers)
        if resolution is None:
            await event_store.mark_unprocessed(db, record_id, error="asset_not_found")
            return ProcessingResult(event_type=event.type, outcome="not_found", reason="asset not found")

        asset = resolution.asset
        asset_id, user_id = asset.id, asset.user_id
        has_scratch = kind == EventKind.RENDITION_READY and await _has_scratch_items(db, asset)
        snapshot = AssetSnapshot.from_asset(asset, has_scratch_items=has_scratch)
        decision = decide(kind, snapshot, ctx)

        if decision.outcome == Outcome.APPLIED and decision.updates:
            won = await apply_decision(db, asset_id, decision)
            if not won:
                await db.rollback()
                logger.info(
                    "Transition %s for asset %s lost a concurrent update; treating as duplicate",
                    decision.transition,
                    asset_id,
                )
                decision = Decision(
                    transition=decision.transition,
                    outcome=Outcome.DUPLICATE,
                    reason="precondition no longer holds",
                )
            else:
                new_asset_id = decision.updates.get("mux_asset_id")
                if new_asset_id and new_asset_id != snapshot.mux_asset_id:
                    moved = await backfill_scratch_items(db, asset, snapshot.mux_asset_id, new_asset_id)
                    if moved:
                        logger.info("Back-filled %s scratch items onto %s", moved, new_asset_id)
                await db.commit()
                await realtime.publish_asset_change(user_id, asset_id, "UPDATE", decision.updates)

        logger.info(
            "Mux %s for asset %s via %s: %s (%s)",
            event.type,
            asset_id,
            resolution.strategy.value,
            decision.transition,
            decision.outcome.value,
        )

        if decision.outcome == Outcome.REJECTED:
            await event_store.mark_unprocessed(db, record_id, error=decision.reason, asset_id=asset_id)
        else:
            if decision.outcome == Outcome.APPLIED:
                _dispatch(decision.side_effect, asset_id)
            await event_store.mark_processed(db, record_id, asset_id=asset_id)

        return ProcessingResult(
            event_type=event.type,
            outcome=decision.outcome.value,
            asset_id=asset_id,
            strategy=resolution.strategy.value,
            transition=decision.transition,
            side_effect=decision.side_effect.value if decision.outcome == Outcome.APPLIED else SideEffect.NONE.value,
            reason=decision.reason,
        )
    except Exception as exc:
        logger.exception("Failed to process Mux %s event: %s", event.type, exc)
        await db.rollback()
        await event_store.mark_unprocessed(db, record_id, error=str(exc))
        return ProcessingResult(event_type=event.type, outcome="error", reason="processing failed")


async def reconcile_pending_events(limit: int = 100) -> Dict[str, int]:
    """Replay stored events that were never applied, oldest first."""
    counts: Dict[str, int] = {}
    async with async_session_maker() as db:
        records = await event_store.list_unprocessed(db, event_types=HANDLED_EVENT_TYPES, limit=limit)
        pending = [(record.id, record.event_id, record.payload) for record in records]
        for record_id, event_id, payload in pending:
            try:
                event = MuxWebhookEvent.model_validate(payload)
            except ValidationError as exc:
                logger.warning("Stored webhook event %s is not a valid Mux event: %s", event_id, exc)
                await event_store.mark_unprocessed(db, record_id, error="invalid stored payload")
                counts["invalid"] = counts.get("invalid", 0) + 1
                continue
            result = await process_event(db, event, record_id)
            counts[result.outcome] = counts.get(result.outcome, 0) + 1
    if counts:
        logger.info("Webhook reconciliation: %s", counts)
    return counts
