"""
Turn raw model output into a clean, deduplicated item list.

Parsing walks a recovery ladder so that a badly formatted answer still yields
whatever is salvageable:

1. direct JSON parse
2. sanitized reparse (code fences, over-long decimals, trailing or missing commas)
3. regex extraction of name/description pairs
4. the scratch items themselves

`reconcile_items` then applies the deterministic merge rules against the
scratch items: transcript-sourced name, description and timestamp win, the
scratch value wins, and every item ends up with a positive value.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from pydantic import ValidationError

from multimodal.models import MergedItem, MergeOutput

logger = logging.getLogger(__name__)


class RecoveryStage:
    DIRECT = "direct"
    SANITIZED = "sanitized"
    REGEX = "regex"
    SCRATCH = "scratch_fallback"


@dataclass
class ScratchCandidate:
    name: str
    description: str = ""
    timestamp: Optional[float] = None
    estimated_value: Optional[float] = None

    def as_prompt_item(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "timestamp": self.timestamp,
            "estimated_value": self.estimated_value,
        }


# Category heuristics for items with no value from the model or a detection.
CATEGORY_PRICES: Sequence[Tuple[str, float, Tuple[str, ...]]] = (
    (
        "electronics",
        500.0,
        ("laptop", "computer", "macbook", "tv", "television", "monitor", "phone", "iphone",
         "tablet", "ipad", "camera", "console", "playstation", "xbox", "speaker", "printer"),
    ),
    (
        "appliances",
        700.0,
        ("refrigerator", "fridge", "washer", "dryer", "dishwasher", "oven", "stove", "microwave",
         "freezer", "range"),
    ),
    (
        "furniture",
        400.0,
        ("sofa", "couch", "sectional", "table", "chair", "desk", "bed", "dresser", "bookshelf",
         "cabinet", "nightstand", "ottoman", "armchair", "recliner"),
    ),
    ("jewelry", 300.0, ("ring", "necklace", "bracelet", "earrings", "watch", "jewelry")),
    ("instruments", 350.0, ("guitar", "piano", "keyboard", "violin", "drum")),
    ("tools", 150.0, ("drill", "saw", "toolbox", "mower", "tool")),
    (
        "decor",
        75.0,
        ("lamp", "pillow", "rug", "painting", "mirror", "vase", "curtain", "curtains", "art",
         "frame", "clock", "plant"),
    ),
    ("kitchenware", 50.0, ("blender", "toaster", "kettle", "pan", "pot", "knife", "mixer")),
)
DEFAULT_FALLBACK_PRICE = 50.0

_STOPWORDS = {"the", "and", "with", "for", "of", "a", "an", "on", "in", "at", "my", "our", "this", "that"}
_TOKEN_RE = re.compile(r"[a-z0-9]+")
_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_LONG_DECIMAL_RE = re.compile(r"(-?\d+\.\d{2})\d{4,}")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_MISSING_COMMA_RE = re.compile(r"}\s*{")
_NAME_RE = re.compile(r'"name"\s*:\s*"((?:[^"\\]|\\.)+)"')
_DESCRIPTION_RE = re.compile(r'"description"\s*:\s*"((?:[^"\\]|\\.)*)"')


def tokens(text: str) -> Set[str]:
    return {
        token
        for token in _TOKEN_RE.findall((text or "").lower())
        if token not in _STOPWORDS and len(token) > 1
    }


def round_timestamp(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    try:
        return round(float(value), 1)
    except (TypeError, ValueError):
        return None


def fallback_value(name: str, description: str = "") -> float:
    """Category-based estimate; always positive."""
    words = tokens(name) | tokens(description)
    name_words = tokens(name)
    # the name decides first so "lamp on a desk" prices as decor
    for pool in (name_words, words):
        for _category, price, keywords in CATEGORY_PRICES:
            if pool.intersection(keywords):
                return price
    return DEFAULT_FALLBACK_PRICE


def _validate(data: Any) -> List[MergedItem]:
    if isinstance(data, list):
        data = {"items": data}
    return MergeOutput.model_validate(data).items


def _direct(raw: str) -> List[MergedItem]:
    return _validate(json.loads(raw))


def sanitize_json_text(raw: str) -> str:
    """Repair the formatting defects models commonly emit."""
    text = raw.strip()
    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1).strip()
    start_candidates = [i for i in (text.find("{"), text.find("[")) if i >= 0]
    if start_candidates:
        start = min(start_candidates)
        end = max(text.rfind("}"), text.rfind("]"))
        if end > start:
            text = text[start:end + 1]
    text = _LONG_DECIMAL_RE.sub(r"\1", text)
    text = _MISSING_COMMA_RE.sub("},{", text)
    text = _TRAILING_COMMA_RE.sub(r"\1", text)
    return text


def extract_partial_items(raw: str) -> List[MergedItem]:
    """Salvage name/description pairs from output that is not JSON at all."""
    matches = list(_NAME_RE.finditer(raw))
    items = []
    for index, match in enumerate(matches):
        segment_end = matches[index + 1].start() if index + 1 < len(matches) else len(raw)
        segment = raw[match.end():segment_end]
        description = _DESCRIPTION_RE.search(segment)
        name = match.group(1).replace('\\"', '"').strip()
        if not name:
            continue
        items.append(
            MergedItem(
                name=name,
                description=description.group(1).replace('\\"', '"') if description else "",
            )
        )
    return items


def scratch_as_items(scratch_items: Iterable[ScratchCandidate]) -> List[MergedItem]:
    return [
        MergedItem(
            name=item.name,
            description=item.description or "",
            timestamp=item.timestamp,
            estimated_value=item.estimated_value,
        )
        for item in scratch_items
        if (item.name or "").strip()
    ]


def parse_merge_output(
    raw: Optional[str],
    scratch_items: Sequence[ScratchCandidate],
) -> Tuple[List[MergedItem], str]:
    """Return the parsed items and the ladder rung that produced them."""
    if raw:
        try:
            return _direct(raw), RecoveryStage.DIRECT
        except (ValueError, ValidationError) as exc:
            logger.warning("Merge output failed direct parse: %s", exc)

        try:
            return _validate(json.loads(sanitize_json_text(raw))), RecoveryStage.SANITIZED
        except (ValueError, ValidationError) as exc:
            logger.warning("Merge output failed sanitized parse: %s", exc)

        partial = extract_partial_items(raw)
        if partial:
            logger.warning("Recovered %s items from malformed merge output by pattern match", len(partial))
            return partial, RecoveryStage.REGEX

    logger.warning("Falling back to %s raw scratch items", len(scratch_items))
    return scratch_as_items(scratch_items), RecoveryStage.SCRATCH


def match_scratch_item(
    item: MergedItem,
    scratch_items: Sequence[ScratchCandidate],
) -> Optional[ScratchCandidate]:
    """
    Pick the scratch item sharing name tokens with `item`.

    Among overlapping candidates the closest timestamp wins, then the larger
    overlap, then detection order.
    """
    item_tokens = tokens(item.name)
    if not item_tokens:
        return None

    best = None
    best_key = None
    for order, candidate in enumerate(scratch_items):
        overlap = len(item_tokens & tokens(candidate.name))
        if not overlap:
            continue
        if item.timestamp is not None and candidate.timestamp is not None:
            distance = abs(float(item.timestamp) - float(candidate.timestamp))
        else:
            distance = float("inf")
        key = (distance, -overlap, order)
        if best_key is None or key < best_key:
            best, best_key = candidate, key
    return best


def _positive(value: Optional[float]) -> Optional[float]:
    try:
        number = float(value) if value is not None else None
    except (TypeError, ValueError):
        return None
    if number is None or number <= 0:
        return None
    return number


def _is_scratch_echo(item: MergedItem, match: Optional[ScratchCandidate]) -> bool:
    return match is not None and item.name.strip().lower() == (match.name or "").strip().lower()


def reconcile_items(
    items: Sequence[MergedItem],
    scratch_items: Sequence[ScratchCandidate],
) -> List[MergedItem]:
    """Apply the merge rules and collapse duplicates, keeping output order by first appearance."""
    merged: Dict[str, Tuple[MergedItem, bool]] = {}
    order: List[str] = []

    for item in items:
        match = match_scratch_item(item, scratch_items)

        timestamp = item.timestamp
        if timestamp is None and match is not None:
            timestamp = match.timestamp
        value = _positive(match.estimated_value) if match is not None else None
        if value is None:
            value = _positive(item.estimated_value)
        description = item.description or (match.description if match is not None else "") or ""

        candidate = item.model_copy(
            update={
                "description": description,
                "timestamp": round_timestamp(timestamp if timestamp is not None else 0.0),
                "estimated_value": value,
            }
        )
        echo = _is_scratch_echo(item, match)

        key = f"scratch:{id(match)}" if match is not None else "name:" + " ".join(sorted(tokens(item.name)))
        existing = merged.get(key)
        if existing is None:
            merged[key] = (candidate, echo)
            order.append(key)
            continue
        merged[key] = _collapse(existing, (candidate, echo))

    results = []
    for key in order:
        item = merged[key][0]
        if item.estimated_value is None:
            item = item.model_copy(update={"estimated_value": fallback_value(item.name, item.description)})
        results.append(item)
    return results


def _collapse(first: Tuple[MergedItem, bool], second: Tuple[MergedItem, bool]) -> Tuple[MergedItem, bool]:
    """Keep the transcript-sourced entry over a scratch echo, else the earlier one."""
    (a, a_echo), (b, b_echo) = first, second
    if a_echo != b_echo:
        primary, other = (b, a) if a_echo else (a, b)
    elif (a.timestamp or 0.0) <= (b.timestamp or 0.0):
        primary, other = a, b
    else:
        primary, other = b, a
    tag_names = list(dict.fromkeys([*primary.tag_names, *other.tag_names]))
    collapsed = primary.model_copy(
        update={
            "description": primary.description or other.description,
            "estimated_value": primary.estimated_value if primary.estimated_value is not None else other.estimated_value,
            "tag_names": tag_names,
            "room_name": primary.room_name or other.room_name,
        }
    )
    return collapsed, a_echo and b_echo
