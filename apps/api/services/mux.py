"""Mux video API helpers: direct uploads, webhook signatures and playback URLs."""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple
from urllib.parse import unquote

import httpx
from jose import jwt

from config import settings

logger = logging.getLogger(__name__)

PENDING_AUDIO_PREFIX = "pending:"


class MuxApiError(RuntimeError):
    """Raised when the Mux REST API rejects or fails a request."""


@dataclass
class DirectUpload:
    upload_id: str
    upload_url: str
    correlation_id: str


@dataclass
class PendingAudio:
    mux_asset_id: str
    rendition_id: str
    rendition_name: str


def _parse_signature_header(header: str) -> Tuple[Optional[str], List[str]]:
    timestamp = None
    signatures: List[str] = []
    for part in (header or "").split(","):
        key, _, value = part.strip().partition("=")
        if key == "t" and value:
            timestamp = value
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def _expected_signature(secret: str, timestamp: str, raw_body: bytes) -> str:
    signed_payload = timestamp.encode() + b"." + raw_body
    return hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()


def sign_webhook_payload(raw_body: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a `Mux-Signature` header value for a payload."""
    ts = str(int(timestamp if timestamp is not None else time.time()))
    return f"t={ts},v1={_expected_signature(secret, ts, raw_body)}"


def verify_webhook_signature(
    raw_body: bytes,
    header: str,
    secret: str,
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> bool:
    """
    Verify a `Mux-Signature: t=<timestamp>,v1=<hex>` header.

    The signature is an HMAC-SHA256 over `"<timestamp>.<raw body>"`. Secrets
    pasted URL-encoded from the dashboard are accepted as well.
    """
    if not secret:
        logger.error("Webhook secret is not configured; rejecting signature")
        return False

    timestamp, signatures = _parse_signature_header(header)
    if not timestamp or not signatures:
        logger.warning("Malformed Mux-Signature header")
        return False

    if tolerance_seconds and tolerance_seconds > 0:
        try:
            signed_at = int(timestamp)
        except ValueError:
            logger.warning("Non-numeric timestamp in Mux-Signature header")
            return False
        current = now if now is not None else time.time()
        if abs(current - signed_at) > tolerance_seconds:
            logger.warning("Mux-Signature timestamp outside tolerance window")
            return False

    candidates = [secret]
    decoded = unquote(secret)
    if decoded != secret:
        candidates.append(decoded)

    for candidate in candidates:
        expected = _expected_signature(candidate, timestamp, raw_body)
        if any(hmac.compare_digest(expected, received) for received in signatures):
            return True
    return False


def stream_url(playback_id: str) -> str:
    return f"{settings.MUX_STREAM_BASE_URL.rstrip('/')}/{playback_id}.m3u8"


def build_pending_audio_url(mux_asset_id: str, rendition_id: str, rendition_name: str) -> str:
    """Sentinel stored in `mux_audio_url` until the rendition is fetched."""
    return f"{PENDING_AUDIO_PREFIX}{mux_asset_id}/{rendition_id}/{rendition_name}"


def is_pending_audio_url(value: Optional[str]) -> bool:
    return bool(value) and str(value).startswith(PENDING_AUDIO_PREFIX)


def parse_pending_audio_url(value: Optional[str]) -> Optional[PendingAudio]:
    if not is_pending_audio_url(value):
        return None
    parts = str(value)[len(PENDING_AUDIO_PREFIX):].split("/")
    if len(parts) < 2 or not parts[0] or not parts[1]:
        return None
    rendition_name = parts[2] if len(parts) > 2 and parts[2] else settings.AUDIO_RENDITION_NAME
    return PendingAudio(mux_asset_id=parts[0], rendition_id=parts[1], rendition_name=rendition_name)


def create_playback_token(playback_id: str, audience: str = "v", expires_minutes: int = 120) -> str:
    """Sign an RS256 playback JWT with the configured Mux signing key."""
    key_id = (settings.MUX_SIGNING_KEY_ID or "").strip()
    encoded_key = (settings.MUX_SIGNING_PRIVATE_KEY or "").strip()
    if not key_id or not encoded_key:
        raise MuxApiError("Mux signing key is not configured")
    if not playback_id:
        raise MuxApiError("Invalid playback ID: cannot be empty")

    private_key = base64.b64decode(encoded_key).decode("utf-8")
    expires_at = datetime.now(timezone.utc) + timedelta(minutes=max(expires_minutes, 1))
    claims = {
        "sub": playback_id,
        "aud": audience,
        "exp": int(expires_at.timestamp()),
        "kid": key_id,
    }
    return jwt.encode(claims, private_key, algorithm="RS256", headers={"kid": key_id})


def static_rendition_url(playback_id: str, rendition_name: str) -> str:
    token = create_playback_token(playback_id)
    return f"{settings.MUX_STREAM_BASE_URL.rstrip('/')}/{playback_id}/{rendition_name}?token={token}"


def _api_auth() -> Tuple[str, str]:
    token_id = (settings.MUX_TOKEN_ID or "").strip()
    token_secret = (settings.MUX_TOKEN_SECRET or "").strip()
    if not token_id or not token_secret:
        raise MuxApiError("MUX_TOKEN_ID / MUX_TOKEN_SECRET are not configured")
    return token_id, token_secret


async def create_direct_upload(correlation_id: str) -> DirectUpload:
    """Create a signed-playback direct upload that also renders an audio-only file."""
    body = {
        "cors_origin": settings.SITE_URL,
        "new_asset_settings": {
            "playback_policy": ["signed"],
            "passthrough": correlation_id,
            "static_renditions": [{"resolution": "audio-only"}],
            "meta": {"external_id": correlation_id},
        },
    }
    url = f"{settings.MUX_API_BASE_URL.rstrip('/')}/video/v1/uploads"
    try:
        async with httpx.AsyncClient(timeout=settings.COLLABORATOR_TIMEOUT_SECONDS) as client:
            response = await client.post(url, json=body, auth=_api_auth())
    except httpx.HTTPError as exc:
        raise MuxApiError(f"Mux upload request failed: {exc}") from exc

    if response.status_code >= 400:
        raise MuxApiError(f"Mux API error: {response.status_code} {response.text[:500]}")

    data = (response.json() or {}).get("data") or {}
    upload_id = str(data.get("id") or "").strip()
    upload_url = str(data.get("url") or "").strip()
    if not upload_id or not upload_url:
        raise MuxApiError("Mux upload response missing id or url")
    logger.info("Created Mux direct upload %s (correlation %s)", upload_id, correlation_id)
    return DirectUpload(upload_id=upload_id, upload_url=upload_url, correlation_id=correlation_id)
