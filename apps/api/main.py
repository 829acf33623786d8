"""
Padlox Pipeline - FastAPI Backend
Mux webhook ingestion, transcription and inventory merge for home inspection videos.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    mux,
    transcribe,
    merge,
    assets,
)
from services.stage_orchestrator import sweep_stalled_assets
from services.webhook_processor import reconcile_pending_events


async def _pipeline_recovery_tick() -> None:
    try:
        replayed = await reconcile_pending_events(limit=int(settings.WEBHOOK_RECONCILE_BATCH_SIZE))
        if replayed:
            print(f"🔁 Webhook reconciliation: {replayed}")
    except Exception as exc:
        print(f"⚠️ Webhook reconciliation tick failed: {exc}")
    try:
        swept = await sweep_stalled_assets(threshold_minutes=int(settings.STALLED_ASSET_THRESHOLD_MINUTES))
        if any(swept.values()):
            print(
                f"♻️ Stalled asset sweep: transcribe={len(swept['transcribe'])} "
                f"errored={len(swept['errored'])} merge={len(swept['merge'])}"
            )
    except Exception as exc:
        print(f"⚠️ Stalled asset sweep failed: {exc}")


async def _periodic_pipeline_recovery() -> None:
    interval_minutes = max(int(settings.STALLED_ASSET_SWEEP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        await _pipeline_recovery_tick()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Padlox Pipeline API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    recovery_task = None
    if int(settings.STALLED_ASSET_SWEEP_INTERVAL_MINUTES) > 0:
        await _pipeline_recovery_tick()
        recovery_task = asyncio.create_task(_periodic_pipeline_recovery())
        print(
            "📅 Pipeline recovery loop enabled "
            f"(every {int(settings.STALLED_ASSET_SWEEP_INTERVAL_MINUTES)} min)."
        )
    if not settings.MUX_WEBHOOK_VERIFY_SIGNATURE:
        print("⚠️ Mux webhook signature verification is disabled.")
    yield
    # Shutdown
    if recovery_task is not None:
        recovery_task.cancel()
        try:
            await recovery_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Padlox Pipeline API",
    description="Turn home inspection recordings into itemised inventory",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(mux.router, prefix="/mux", tags=["Mux"])
app.include_router(transcribe.router, prefix="/transcribe", tags=["Transcription"])
app.include_router(merge.router, prefix="/analyze-transcript", tags=["Merge"])
app.include_router(assets.router, prefix="/assets", tags=["Assets"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Padlox Pipeline API",
        "version": "0.1.0",
        "status": "running"
    }
