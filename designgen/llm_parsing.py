from __future__ import annotations

import json
import math
from typing import Any, Dict, List, Optional

from designgen.errors import ParseFailure
from designgen.models import Design, Font, Placement

DEFAULT_PALETTE = ["#D4AF37", "#0b0b0b", "#ffffff"]
DEFAULT_TITLE = "Untitled"
PLACEMENT_TYPES = {"text", "image", "shape"}

_NUMERIC_DEFAULTS = {"x": 0.0, "y": 0.0, "width": 400.0, "height": 400.0}


def _coerce_number(value: Any, default: float) -> float:
    # Zero is a legitimate coordinate; only missing/garbage values fall back.
    if isinstance(value, bool) or value is None:
        return default
    try:
        num = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(num) or math.isinf(num):
        return default
    return max(0.0, num)


def _normalize_placement(raw: Dict[str, Any]) -> Placement:
    ptype = str(raw.get("type") or "text").strip().lower()
    if ptype not in PLACEMENT_TYPES:
        ptype = "text"
    area = raw.get("area")
    area = str(area).strip() if area not in (None, "") else "front"
    content = raw.get("content")
    if not isinstance(content, dict):
        # Providers sometimes inline the payload as a bare string.
        if isinstance(content, str) and content.strip():
            content = {"src": content} if ptype == "image" else {"text": content}
        else:
            content = {}
    nums = {k: _coerce_number(raw.get(k), d) for k, d in _NUMERIC_DEFAULTS.items()}
    return Placement(area=area or "front", type=ptype, content=dict(content), **nums)


def _normalize_palette(raw: Any) -> List[str]:
    if not isinstance(raw, list):
        return list(DEFAULT_PALETTE)
    palette = [str(c) for c in raw if c is not None]
    return palette or list(DEFAULT_PALETTE)


def _normalize_fonts(raw: Any) -> List[Font]:
    if not isinstance(raw, list):
        return []
    fonts: List[Font] = []
    for item in raw:
        if isinstance(item, str) and item.strip():
            fonts.append(Font(name=item.strip()))
            continue
        if not isinstance(item, dict) or not item.get("name"):
            continue
        data = dict(item)
        data["name"] = str(data["name"])
        size = data.get("size_pt")
        data["size_pt"] = None if size is None else _coerce_number(size, 0.0) or None
        weight = data.get("weight")
        data["weight"] = None if weight is None else str(weight)
        fonts.append(Font(**data))
    return fonts


def normalize_design(doc: Any) -> Design:
    """Coerce a decoded provider object into a Design or raise ParseFailure.

    Shape problems (not an object, placements not an array) are fatal;
    field-level problems are defaulted.
    """
    if not isinstance(doc, dict):
        raise ParseFailure("provider output is not a JSON object")
    placements = doc.get("placements")
    if not isinstance(placements, list):
        reason = doc.get("error")
        if isinstance(reason, str) and reason.strip():
            raise ParseFailure(f"provider declined: {reason.strip()[:500]}")
        raise ParseFailure("placements must be an array")
    title = doc.get("title")
    notes = doc.get("production_notes")
    return Design(
        title=str(title) if title not in (None, "") else DEFAULT_TITLE,
        placements=[_normalize_placement(p) for p in placements if isinstance(p, dict)],
        palette=_normalize_palette(doc.get("palette")),
        fonts=_normalize_fonts(doc.get("fonts")),
        production_notes=str(notes) if notes is not None else "",
    )


def parse_design(raw_text: Optional[str]) -> Design:
    """Strictly decode provider text and normalize it into a Design."""
    text = (raw_text or "").strip()
    if not text:
        raise ParseFailure("empty provider response", raw=raw_text)
    try:
        doc = json.loads(text)
    except (TypeError, ValueError) as exc:
        raise ParseFailure(f"malformed JSON: {exc}", raw=raw_text) from exc
    try:
        return normalize_design(doc)
    except ParseFailure as exc:
        exc.raw = raw_text
        raise
