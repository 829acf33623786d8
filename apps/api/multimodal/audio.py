import logging
from typing import Any, Dict, List

import httpx

from .models import TranscriptParagraph, TranscriptResult

logger = logging.getLogger(__name__)

DEEPGRAM_DEFAULT_URL = "https://api.deepgram.com/v1/listen"

def _paragraphs(alternative: Dict[str, Any]) -> List[TranscriptParagraph]:
    block = (alternative.get("paragraphs") or {}).get("paragraphs") or []
    paragraphs = []
    for paragraph in block:
        text = " ".join(sentence.get("text", "") for sentence in paragraph.get("sentences") or []).strip()
        if not text:
            continue
        paragraphs.append(
            TranscriptParagraph(
                start=float(paragraph.get("start") or 0.0),
                end=float(paragraph.get("end") or 0.0),
                text=text,
            )
        )
    return paragraphs

def parse_deepgram_response(payload: Dict[str, Any]) -> TranscriptResult:
    """Pull the first channel's best alternative out of a Deepgram response."""
    channels = ((payload.get("results") or {}).get("channels")) or []
    if not channels or not channels[0].get("alternatives"):
        raise ValueError("Deepgram response has no transcript alternatives")
    alternative = channels[0]["alternatives"][0]
    paragraphs = _paragraphs(alternative)
    if paragraphs:
        # timestamped paragraphs give the merge prompt a time reference
        text = "\n".join(f"[{p.start:.1f}s] {p.text}" for p in paragraphs)
    else:
        text = (alternative.get("transcript") or "").strip()
    return TranscriptResult(text=text, paragraphs=paragraphs)

async def transcribe_audio_url(
    audio_url: str,
    api_key: str,
    model: str = "nova-2",
    api_url: str = DEEPGRAM_DEFAULT_URL,
    timeout: float = 120,
) -> TranscriptResult:
    """
    Transcribe a remote audio file with Deepgram pre-recorded transcription.
    """
    # Mock for local development if key is missing
    if not api_key or "your_" in api_key or api_key == "test-key":
        logger.warning("Using MOCK transcription because Deepgram API Key is missing or invalid.")
        paragraphs = [
            TranscriptParagraph(start=2.0, end=6.5, text="Starting in the living room with the sectional sofa."),
            TranscriptParagraph(start=12.3, end=16.0, text="Here is the laptop on the desk."),
        ]
        return TranscriptResult(
            text="\n".join(f"[{p.start:.1f}s] {p.text}" for p in paragraphs),
            paragraphs=paragraphs,
            provider="mock",
        )

    params = {"model": model, "smart_format": "true", "paragraphs": "true", "punctuate": "true"}
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(
                api_url or DEEPGRAM_DEFAULT_URL,
                params=params,
                headers={"Authorization": f"Token {api_key}"},
                json={"url": audio_url},
            )
            response.raise_for_status()
    except httpx.HTTPError as e:
        logger.error(f"Error transcribing audio: {e}")
        raise
    return parse_deepgram_response(response.json())
