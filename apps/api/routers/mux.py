"""Mux direct uploads and webhook ingestion."""

from __future__ import annotations

import json
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import get_db
from models.asset import Asset
from models.user import User
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services import event_store, webhook_processor
from services.mux import MuxApiError, create_direct_upload, verify_webhook_signature
from services.mux_events import MuxWebhookEvent, extract_identifiers

logger = logging.getLogger(__name__)

router = APIRouter()


class CreateUploadRequest(BaseModel):
    user_id: Optional[str] = None
    correlation_id: Optional[str] = Field(default=None, max_length=200)
    name: Optional[str] = Field(default=None, max_length=200)
    client_reference_id: Optional[str] = Field(default=None, max_length=200)


class CreateUploadResponse(BaseModel):
    asset_id: str
    upload_id: str
    upload_url: str
    correlation_id: str


async def _ensure_user(db: AsyncSession, user_id: str) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user:
        return user
    user = User(id=user_id, email=f"{user_id}@local.invalid")
    db.add(user)
    await db.flush()
    return user


@router.post("/upload", response_model=CreateUploadResponse)
async def create_upload(
    request: CreateUploadRequest,
    _rate_limit: None = Depends(rate_limit("mux_upload", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """
    Start a recording upload.

    The placeholder asset keeps the upload id in `mux_asset_id` until the
    provider reports the real asset id.
    """
    user_id = ensure_user_scope(auth.user_id, request.user_id)
    correlation_id = (request.correlation_id or "").strip() or str(uuid.uuid4())

    try:
        upload = await create_direct_upload(correlation_id)
    except MuxApiError as exc:
        logger.error("Mux direct upload failed for user %s: %s", user_id, exc)
        raise HTTPException(status_code=502, detail="Could not create upload with video provider.") from exc

    await _ensure_user(db, user_id)
    asset = Asset(
        user_id=user_id,
        name=(request.name or "").strip() or "Home inspection video",
        media_type="video",
        media_url="",
        is_source_video=True,
        mux_asset_id=upload.upload_id,
        mux_upload_id=upload.upload_id,
        mux_correlation_id=correlation_id,
        mux_processing_status="preparing",
        client_reference_id=request.client_reference_id,
    )
    db.add(asset)
    await db.commit()
    await db.refresh(asset)

    return CreateUploadResponse(
        asset_id=asset.id,
        upload_id=upload.upload_id,
        upload_url=upload.upload_url,
        correlation_id=correlation_id,
    )


@router.options("/webhook")
async def webhook_preflight():
    return Response(
        status_code=204,
        headers={
            "Allow": "GET, POST, OPTIONS",
            "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
            "Access-Control-Allow-Headers": "Content-Type, Mux-Signature",
        },
    )


@router.get("/webhook")
async def webhook_liveness():
    return {"status": "ok", "endpoint": "mux-webhook"}


@router.post("/webhook")
async def receive_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    """
    Ingest one Mux notification.

    Every authenticated, parseable delivery is acknowledged with 200 so the
    provider stops retrying; events that could not be applied stay
    unprocessed in the event store for reconciliation.
    """
    raw_body = await request.body()

    if settings.MUX_WEBHOOK_VERIFY_SIGNATURE:
        header = request.headers.get("mux-signature", "")
        if not header or not verify_webhook_signature(
            raw_body,
            header,
            settings.MUX_WEBHOOK_SECRET,
            tolerance_seconds=settings.MUX_WEBHOOK_TOLERANCE_SECONDS,
        ):
            logger.warning("Rejected Mux webhook with missing or invalid signature")
            raise HTTPException(status_code=401, detail="Invalid webhook signature.")
    else:
        logger.warning("Mux webhook signature verification is DISABLED; accepting unsigned delivery")

    try:
        payload = json.loads(raw_body)
        event = MuxWebhookEvent.model_validate(payload)
    except (ValueError, ValidationError):
        raise HTTPException(status_code=400, detail="Invalid JSON payload.")

    try:
        record = await event_store.record_event(
            db,
            event_id=event_store.event_key(event, raw_body),
            event=event,
            identifiers=extract_identifiers(event),
            payload=payload,
        )
        record_id = record.id if record is not None else None
        if record is not None and record.processed:
            logger.info("Skipping already processed Mux event %s", record.event_id)
            return {"received": True, "type": event.type, "duplicate": True}

        result = await webhook_processor.process_event(db, event, record_id)
    except Exception as exc:
        logger.exception("Unhandled error ingesting Mux %s webhook: %s", event.type, exc)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    return {"received": True, "type": event.type, "outcome": result.outcome}
