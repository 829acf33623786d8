"""
Asset processing state machine.

Every webhook-driven change to an asset is described by one row of
`TRANSITIONS`: the event kind it reacts to, a guard over the persisted
snapshot, and the decision it produces. Decisions are plain data; the webhook
processor applies them as a conditional single-row UPDATE whose WHERE clause
re-checks `preconditions`, so a replayed or concurrent delivery that lost the
race changes nothing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from models.asset import Asset
from services.mux import build_pending_audio_url, stream_url
from services.mux_events import AssetData, EventKind, Rendition, is_audio_rendition


class SideEffect(str, Enum):
    NONE = "none"
    TRANSCRIBE = "transcribe"
    MERGE = "merge"


class Outcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    REJECTED = "rejected"


IN_FLIGHT_TRANSCRIPT_STATUSES = ("pending", "processing")
RESTARTABLE_TRANSCRIPT_STATUSES: Tuple[Optional[str], ...] = (None, "error")


@dataclass(frozen=True)
class AssetSnapshot:
    mux_asset_id: Optional[str] = None
    mux_processing_status: Optional[str] = None
    mux_playback_id: Optional[str] = None
    transcript_status: Optional[str] = None
    is_processed: bool = False
    has_scratch_items: bool = False

    @classmethod
    def from_asset(cls, asset: Asset, has_scratch_items: bool = False) -> "AssetSnapshot":
        return cls(
            mux_asset_id=asset.mux_asset_id,
            mux_processing_status=asset.mux_processing_status,
            mux_playback_id=asset.mux_playback_id or None,
            transcript_status=asset.transcript_processing_status,
            is_processed=bool(asset.is_processed),
            has_scratch_items=has_scratch_items,
        )


@dataclass(frozen=True)
class EventContext:
    """What the event says, independent of which payload generation carried it."""

    asset_id: Optional[str] = None
    upload_id: Optional[str] = None
    asset: Optional[AssetData] = None
    rendition: Optional[Rendition] = None


@dataclass
class Decision:
    transition: str
    outcome: Outcome
    updates: Dict[str, Any] = field(default_factory=dict)
    preconditions: Dict[str, Tuple[Any, ...]] = field(default_factory=dict)
    side_effect: SideEffect = SideEffect.NONE
    reason: str = ""


Guard = Callable[[AssetSnapshot, EventContext], bool]
Builder = Callable[[AssetSnapshot, EventContext], Decision]


@dataclass(frozen=True)
class Transition:
    kind: EventKind
    name: str
    guard: Guard
    build: Builder


def _noop(name: str, outcome: Outcome, reason: str) -> Builder:
    def _build(snapshot: AssetSnapshot, ctx: EventContext) -> Decision:
        return Decision(transition=name, outcome=outcome, reason=reason)

    return _build


# upload linked to asset

def _link_placeholder(snapshot: AssetSnapshot, ctx: EventContext) -> Decision:
    updates: Dict[str, Any] = {"mux_asset_id": ctx.asset_id}
    if ctx.upload_id:
        updates["mux_upload_id"] = ctx.upload_id
    return Decision(
        transition="link_placeholder",
        outcome=Outcome.APPLIED,
        updates=updates,
        preconditions={"mux_asset_id": (snapshot.mux_asset_id,)},
        reason="placeholder upload id replaced with provider asset id",
    )


# asset ready / errored

def _mark_ready(snapshot: AssetSnapshot, ctx: EventContext) -> Decision:
    data = ctx.asset
    playback_id = data.playback_id if data else None
    return Decision(
        transition="mark_ready",
        outcome=Outcome.APPLIED,
        updates={
            "mux_processing_status": "ready",
            "mux_playback_id": playback_id,
            "mux_duration": data.duration if data else None,
            "mux_aspect_ratio": data.aspect_ratio if data else None,
            "mux_max_resolution": (data.max_stored_resolution or data.max_resolution_tier) if data else None,
            "media_url": stream_url(playback_id),
            "mux_asset_id": ctx.asset_id,
        },
        reason="transcode finished",
    )


def _is_same_ready(snapshot: AssetSnapshot, ctx: EventContext) -> bool:
    return (
        snapshot.mux_processing_status == "ready"
        and snapshot.mux_playback_id == (ctx.asset.playback_id if ctx.asset else None)
        and snapshot.mux_asset_id == ctx.asset_id
    )


def _mark_errored(snapshot: AssetSnapshot, ctx: EventContext) -> Decision:
    return Decision(
        transition="mark_errored",
        outcome=Outcome.APPLIED,
        updates={"mux_processing_status": "error"},
        preconditions={"mux_processing_status": (snapshot.mux_processing_status,)},
        reason="provider reported a transcode error",
    )


# static rendition ready

def _start_transcription(snapshot: AssetSnapshot, ctx: EventContext) -> Decision:
    rendition = ctx.rendition
    return Decision(
        transition="start_transcription",
        outcome=Outcome.APPLIED,
        updates={
            "transcript_processing_status": "pending",
            "transcript_error": None,
            "mux_audio_url": build_pending_audio_url(
                rendition.mux_asset_id, rendition.rendition_id, rendition.name
            ),
        },
        preconditions={"transcript_processing_status": RESTARTABLE_TRANSCRIPT_STATUSES},
        side_effect=SideEffect.TRANSCRIBE,
        reason="audio rendition available",
    )


def _reconcile_merge(snapshot: AssetSnapshot, ctx: EventContext) -> Decision:
    return Decision(
        transition="reconcile_merge",
        outcome=Outcome.APPLIED,
        side_effect=SideEffect.MERGE,
        reason="late rendition after completed transcript with outstanding scratch items",
    )


TRANSITIONS: List[Transition] = [
    Transition(
        EventKind.UPLOAD_LINKED,
        "missing_asset_id",
        lambda s, c: not c.asset_id,
        _noop("missing_asset_id", Outcome.REJECTED, "upload event carries no asset id"),
    ),
    Transition(
        EventKind.UPLOAD_LINKED,
        "already_linked",
        lambda s, c: s.mux_asset_id == c.asset_id,
        _noop("already_linked", Outcome.DUPLICATE, "asset already carries provider asset id"),
    ),
    Transition(EventKind.UPLOAD_LINKED, "link_placeholder", lambda s, c: True, _link_placeholder),
    Transition(
        EventKind.ASSET_READY,
        "missing_playback_id",
        lambda s, c: not (c.asset and c.asset.playback_id),
        _noop("missing_playback_id", Outcome.REJECTED, "ready event carries no playback id"),
    ),
    Transition(
        EventKind.ASSET_READY,
        "already_ready",
        _is_same_ready,
        _noop("already_ready", Outcome.DUPLICATE, "asset already ready with this playback id"),
    ),
    Transition(EventKind.ASSET_READY, "mark_ready", lambda s, c: True, _mark_ready),
    Transition(
        EventKind.ASSET_ERRORED,
        "stale_error",
        lambda s, c: s.mux_processing_status == "ready",
        _noop("stale_error", Outcome.IGNORED, "asset already ready"),
    ),
    Transition(
        EventKind.ASSET_ERRORED,
        "already_errored",
        lambda s, c: s.mux_processing_status == "error",
        _noop("already_errored", Outcome.DUPLICATE, "asset already in error"),
    ),
    Transition(EventKind.ASSET_ERRORED, "mark_errored", lambda s, c: True, _mark_errored),
    Transition(
        EventKind.RENDITION_READY,
        "missing_rendition",
        lambda s, c: c.rendition is None,
        _noop("missing_rendition", Outcome.REJECTED, "rendition event carries no rendition"),
    ),
    Transition(
        EventKind.RENDITION_READY,
        "not_audio",
        lambda s, c: not is_audio_rendition(c.rendition),
        _noop("not_audio", Outcome.IGNORED, "rendition is not the canonical audio file"),
    ),
    Transition(
        EventKind.RENDITION_READY,
        "start_transcription",
        lambda s, c: s.transcript_status in RESTARTABLE_TRANSCRIPT_STATUSES,
        _start_transcription,
    ),
    Transition(
        EventKind.RENDITION_READY,
        "reconcile_merge",
        lambda s, c: s.transcript_status == "completed" and s.has_scratch_items and not s.is_processed,
        _reconcile_merge,
    ),
    Transition(
        EventKind.RENDITION_READY,
        "transcript_completed",
        lambda s, c: s.transcript_status == "completed",
        _noop("transcript_completed", Outcome.DUPLICATE, "transcript already completed"),
    ),
    Transition(
        EventKind.RENDITION_READY,
        "transcription_in_flight",
        lambda s, c: s.transcript_status in IN_FLIGHT_TRANSCRIPT_STATUSES,
        _noop("transcription_in_flight", Outcome.DUPLICATE, "transcription already pending or processing"),
    ),
]


def decide(kind: EventKind, snapshot: AssetSnapshot, ctx: EventContext) -> Decision:
    """Return the decision of the first matching transition row."""
    for transition in TRANSITIONS:
        if transition.kind == kind and transition.guard(snapshot, ctx):
            return transition.build(snapshot, ctx)
    return Decision(transition="unhandled", outcome=Outcome.IGNORED, reason=f"no transition for {kind.value}")
