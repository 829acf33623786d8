"""Transcription collaborator endpoint."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Response
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.transcription import TranscriptionError, claim_transcription, run_transcription

logger = logging.getLogger(__name__)

router = APIRouter()


class TranscribeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    asset_id: Optional[str] = Field(default=None, alias="assetId")


@router.options("")
async def transcribe_preflight():
    return Response(status_code=204, headers={"Allow": "POST, OPTIONS"})


@router.post("", status_code=202)
async def transcribe_asset(
    request: TranscribeRequest,
    background_tasks: BackgroundTasks,
    _rate_limit: None = Depends(rate_limit("transcribe", limit=120, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Claim the asset for transcription and run Deepgram after responding."""
    asset_id = (request.asset_id or "").strip()
    if not asset_id:
        raise HTTPException(status_code=400, detail="Missing assetId")

    try:
        await claim_transcription(db, asset_id, auth.user_id)
    except TranscriptionError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    background_tasks.add_task(run_transcription, asset_id)
    logger.info("Transcription accepted for asset %s", asset_id)
    return {"accepted": True, "assetId": asset_id, "status": "processing"}
