"""Typed views over Mux webhook payloads."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from config import settings


class EventKind(str, Enum):
    UPLOAD_LINKED = "upload_linked"
    ASSET_READY = "asset_ready"
    ASSET_ERRORED = "asset_errored"
    RENDITION_READY = "rendition_ready"
    IGNORED = "ignored"


EVENT_KINDS: Dict[str, EventKind] = {
    "video.upload.asset_created": EventKind.UPLOAD_LINKED,
    "video.asset.ready": EventKind.ASSET_READY,
    "video.asset.errored": EventKind.ASSET_ERRORED,
    "video.asset.static_rendition.ready": EventKind.RENDITION_READY,
    "video.static_rendition.ready": EventKind.RENDITION_READY,
    "video.asset.static_renditions.ready": EventKind.RENDITION_READY,
}


class PlaybackId(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    policy: Optional[str] = None


class MuxWebhookEvent(BaseModel):
    """Envelope shared by every Mux notification."""

    model_config = ConfigDict(extra="allow")

    type: str = Field(min_length=1)
    id: Optional[str] = None
    created_at: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def kind(self) -> EventKind:
        return EVENT_KINDS.get(self.type, EventKind.IGNORED)


class AssetData(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    upload_id: Optional[str] = None
    status: Optional[str] = None
    playback_ids: List[PlaybackId] = Field(default_factory=list)
    duration: Optional[float] = None
    aspect_ratio: Optional[str] = None
    max_stored_resolution: Optional[str] = None
    max_resolution_tier: Optional[str] = None
    passthrough: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None

    @property
    def playback_id(self) -> Optional[str]:
        return self.playback_ids[0].id if self.playback_ids else None


class UploadData(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    asset_id: Optional[str] = None
    new_asset_settings: Optional[Dict[str, Any]] = None


class Rendition(BaseModel):
    """Normalised static rendition notification (both payload generations)."""

    mux_asset_id: str
    rendition_id: str
    name: str


class EventIdentifiers(BaseModel):
    """Correlation fields denormalised onto the event store row."""

    asset_id: Optional[str] = None
    upload_id: Optional[str] = None
    correlation_id: Optional[str] = None


def _text(value: Any) -> Optional[str]:
    cleaned = str(value or "").strip()
    return cleaned or None


def _correlation_from(container: Optional[Dict[str, Any]]) -> Optional[str]:
    if not isinstance(container, dict):
        return None
    passthrough = _text(container.get("passthrough"))
    if passthrough:
        return passthrough
    for nested_key, field in (("meta", "external_id"), ("metadata", "correlation_id")):
        nested = container.get(nested_key)
        if isinstance(nested, dict):
            value = _text(nested.get(field))
            if value:
                return value
    return None


def extract_identifiers(event: MuxWebhookEvent) -> EventIdentifiers:
    data = event.data or {}
    kind = event.kind
    if kind == EventKind.UPLOAD_LINKED:
        return EventIdentifiers(
            asset_id=_text(data.get("asset_id")),
            upload_id=_text(data.get("id")),
            correlation_id=_correlation_from(data.get("new_asset_settings")) or _correlation_from(data),
        )
    if kind == EventKind.RENDITION_READY and _text(data.get("asset_id")):
        return EventIdentifiers(
            asset_id=_text(data.get("asset_id")),
            upload_id=_text(data.get("upload_id")),
            correlation_id=_correlation_from(data),
        )
    return EventIdentifiers(
        asset_id=_text(data.get("id")),
        upload_id=_text(data.get("upload_id")),
        correlation_id=_correlation_from(data),
    )


def parse_rendition(event: MuxWebhookEvent) -> Optional[Rendition]:
    """
    Return the rendition described by a static-rendition event.

    Newer payloads describe a single rendition (`data.asset_id`, `data.id`,
    `data.name`); older ones list files under `data.static_renditions.files`
    on the asset itself, in which case the canonical audio file is picked.
    """
    data = event.data or {}
    asset_id = _text(data.get("asset_id"))
    if asset_id:
        name = _text(data.get("name"))
        if not name and _text(data.get("resolution")) == "audio-only":
            name = settings.AUDIO_RENDITION_NAME
        return Rendition(
            mux_asset_id=asset_id,
            rendition_id=_text(data.get("id")) or "static_renditions",
            name=name or "",
        )

    asset_id = _text(data.get("id"))
    if not asset_id:
        return None
    renditions = data.get("static_renditions")
    files = renditions.get("files") if isinstance(renditions, dict) else None
    if not isinstance(files, list):
        files = []
    names = [_text(row.get("name")) for row in files if isinstance(row, dict)]
    name = settings.AUDIO_RENDITION_NAME if settings.AUDIO_RENDITION_NAME in names else (names[0] if names else "")
    return Rendition(mux_asset_id=asset_id, rendition_id="static_renditions", name=name or "")


def is_audio_rendition(rendition: Rendition) -> bool:
    return rendition.name == settings.AUDIO_RENDITION_NAME
