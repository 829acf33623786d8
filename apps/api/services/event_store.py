"""Durable store for inbound webhook events."""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.webhook_event import WebhookEvent
from services.mux_events import EventIdentifiers, MuxWebhookEvent

logger = logging.getLogger(__name__)


def event_key(event: MuxWebhookEvent, raw_body: bytes) -> str:
    """Provider event id, or a content hash for payloads that lack one."""
    if event.id and str(event.id).strip():
        return str(event.id).strip()
    return "sha256:" + hashlib.sha256(raw_body).hexdigest()


async def get_event(db: AsyncSession, event_id: str) -> Optional[WebhookEvent]:
    result = await db.execute(select(WebhookEvent).where(WebhookEvent.event_id == event_id))
    return result.scalar_one_or_none()


async def record_event(
    db: AsyncSession,
    *,
    event_id: str,
    event: MuxWebhookEvent,
    identifiers: EventIdentifiers,
    payload: dict,
) -> Optional[WebhookEvent]:
    """
    Insert the event, or return the existing row for a redelivery.

    Storage problems are logged and swallowed: the acknowledgement must not
    depend on this table being reachable.
    """
    try:
        existing = await get_event(db, event_id)
        if existing is not None:
            existing.attempts = int(existing.attempts or 0) + 1
            await db.commit()
            logger.info("Redelivered webhook event %s (%s)", event_id, event.type)
            return existing

        record = WebhookEvent(
            event_id=event_id,
            event_type=event.type,
            payload=payload,
            mux_asset_id=identifiers.asset_id,
            mux_upload_id=identifiers.upload_id,
            correlation_id=identifiers.correlation_id,
            processed=False,
            attempts=1,
        )
        db.add(record)
        try:
            await db.commit()
        except IntegrityError:
            # concurrent delivery of the same event won the insert
            await db.rollback()
            return await get_event(db, event_id)
        return record
    except Exception as exc:
        logger.error("Could not store webhook event %s (%s): %s", event_id, event.type, exc)
        try:
            await db.rollback()
        except Exception:
            logger.warning("Rollback after webhook store failure also failed")
        return None


async def mark_processed(db: AsyncSession, record_id: Optional[str], asset_id: Optional[str] = None) -> None:
    if not record_id:
        return
    values = {
        "processed": True,
        "processed_at": datetime.now(timezone.utc),
        "processing_error": None,
    }
    if asset_id:
        values["asset_id"] = asset_id
    try:
        await db.execute(update(WebhookEvent).where(WebhookEvent.id == record_id).values(**values))
        await db.commit()
    except Exception as exc:
        logger.error("Could not mark webhook event %s processed: %s", record_id, exc)
        await db.rollback()


async def mark_unprocessed(
    db: AsyncSession,
    record_id: Optional[str],
    *,
    error: Optional[str] = None,
    asset_id: Optional[str] = None,
) -> None:
    """Leave the event for later reconciliation, noting why."""
    if not record_id:
        return
    values = {"processing_error": (error or "")[:1000] or None}
    if asset_id:
        values["asset_id"] = asset_id
    try:
        await db.execute(update(WebhookEvent).where(WebhookEvent.id == record_id).values(**values))
        await db.commit()
    except Exception as exc:
        logger.error("Could not annotate webhook event %s: %s", record_id, exc)
        await db.rollback()


async def list_unprocessed(
    db: AsyncSession,
    *,
    event_types: Sequence[str],
    limit: int = 100,
) -> List[WebhookEvent]:
    result = await db.execute(
        select(WebhookEvent)
        .where(WebhookEvent.processed.is_(False), WebhookEvent.event_type.in_(list(event_types)))
        .order_by(WebhookEvent.created_at.asc())
        .limit(max(int(limit), 1))
    )
    return list(result.scalars().all())
