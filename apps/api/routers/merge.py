"""Transcript / scratch-item merge endpoint."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.merge_engine import MergeError, merge_asset

logger = logging.getLogger(__name__)

router = APIRouter()


class MergeRequest(BaseModel):
    user_id: Optional[str] = None
    asset_id: Optional[str] = None
    mux_asset_id: Optional[str] = None
    transcript: Optional[str] = None


@router.options("/merge-with-scratch")
async def merge_preflight():
    return Response(status_code=204, headers={"Allow": "POST, OPTIONS"})


@router.post("/merge-with-scratch")
async def merge_with_scratch(
    request: MergeRequest,
    _rate_limit: None = Depends(rate_limit("merge_with_scratch", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    user_id = ensure_user_scope(auth.user_id, request.user_id)
    if not (request.asset_id or request.mux_asset_id):
        raise HTTPException(status_code=400, detail="Missing required fields: user_id and either asset_id or mux_asset_id")

    try:
        outcome = await merge_asset(
            db,
            user_id=user_id,
            asset_id=request.asset_id,
            mux_asset_id=request.mux_asset_id,
            transcript=request.transcript,
        )
    except MergeError as exc:
        logger.error("Merge request for %s failed: %s", request.asset_id or request.mux_asset_id, exc)
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    return {
        "success": True,
        "items": [item.model_dump() for item in outcome.items],
        "message": "Successfully merged transcript with scratch items",
        "recovery": outcome.recovery,
    }
