import asyncio
import logging
from typing import Any, Dict, List, Optional
from openai import OpenAI

logger = logging.getLogger(__name__)

def get_openai_client(api_key: str, base_url: Optional[str] = None, timeout: float = 60) -> Optional[OpenAI]:
    """Get OpenAI client, handling placeholders."""
    if not api_key or "your_" in api_key or api_key == "test-key":
        return None
    return OpenAI(api_key=api_key, base_url=base_url or None, timeout=timeout)

def _format_scratch_item(item: Dict[str, Any]) -> str:
    line = f"- {item['name']}"
    if item.get("description"):
        line += f": {item['description']}"
    if item.get("timestamp"):
        line += f" (at {float(item['timestamp']):.1f}s)"
    if item.get("estimated_value"):
        line += f" - Estimated Value: ${item['estimated_value']}"
    return line

def build_merge_prompt(
    transcript: Optional[str],
    scratch_items: List[Dict[str, Any]],
    tag_names: List[str],
    room_names: List[str],
) -> str:
    """
    Build the extraction prompt for one inspection video.

    The transcript is the primary source. Scratch items (frame detections)
    supply identity and value hints. Tags are a closed vocabulary; rooms may
    be extended.
    """
    if transcript:
        sources = (
            "I have a transcript from a home inspection video and a list of items that were "
            "detected in the video frames during recording.\n\n"
            f"Here is the transcript:\n---\n{transcript}\n---"
        )
    else:
        sources = (
            "I have a list of items that were detected in the video frames during a home "
            "inspection recording. There is no audio transcript available."
        )

    if scratch_items:
        detected = "\n".join(_format_scratch_item(item) for item in scratch_items)
    else:
        detected = "No items were detected in the video frames."

    tags = ", ".join(tag_names) if tag_names else "(none)"
    rooms = ", ".join(room_names) if room_names else "(none)"

    return f"""
You are an insurance inspection assistant analyzing a video and transcript from a home inspection.

{sources}

Here are the items detected in the video frames (name, description, timestamp in seconds, estimated value):
{detected}

Create a single deduplicated list of every inventory item. Items named in the transcript take
precedence over the visual detections; merge items that are referred to differently in the two
sources (a "throw pillow" in the transcript and a "decorative pillow" detection are the same item).

For each item:
1. Provide a clear name.
2. Give a detailed description combining both sources.
3. Include the timestamp (in seconds) when the item first appears. For merged items use the EARLIEST timestamp.
4. Include an estimated value in USD. Prefer a value from the detected items; otherwise give your best estimate.
5. tag_names: zero or more tags chosen ONLY from this list: {tags}
6. room_name: one of these rooms when it fits, or a new short room name: {rooms}

Return a JSON object of this shape:
{{
  "items": [
    {{
      "name": "Item name",
      "description": "Detailed description",
      "timestamp": 2.0,
      "estimated_value": 100.00,
      "tag_names": ["Electronics"],
      "room_name": "Office"
    }}
  ]
}}

Format timestamps as numbers with at most one decimal place. Omit a field when it is unknown.
"""

def complete_json(client: OpenAI, prompt: str, model: str = "gpt-4o") -> str:
    """Run one JSON-mode completion and return the raw message content."""
    response = client.chat.completions.create(
        model=model,
        messages=[
            {"role": "system", "content": "You extract home inventory items and answer with JSON only."},
            {"role": "user", "content": prompt},
        ],
        response_format={"type": "json_object"},
        max_tokens=4000,
    )
    return response.choices[0].message.content or ""

async def request_item_extraction(
    prompt: str,
    api_key: str,
    model: str = "gpt-4o",
    base_url: Optional[str] = None,
    timeout: float = 60,
) -> Optional[str]:
    """
    Ask the model for merged items. Returns None when no model is configured.

    The SDK client is synchronous, so the call runs in a worker thread and is
    bounded by `timeout`.
    """
    client = get_openai_client(api_key, base_url=base_url, timeout=timeout)
    if client is None:
        logger.warning("OpenAI API key missing; merge will fall back to scratch items.")
        return None

    try:
        return await asyncio.wait_for(
            asyncio.to_thread(complete_json, client, prompt, model),
            timeout=timeout,
        )
    except Exception as e:
        logger.error(f"Error in LLM item extraction: {e}")
        raise
