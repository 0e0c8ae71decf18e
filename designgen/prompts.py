from __future__ import annotations

import hashlib
import json
import logging
import os
import re
from typing import Any, Dict, List, Optional, Protocol, Tuple

import requests

from designgen.credentials import PERPLEXITY, CredentialResolver, default_resolver
from designgen.errors import EmptyBrief
from designgen.models import Design, DesignRequest

log = logging.getLogger(__name__)

MAX_BRIEF_LENGTH = 2000
MAX_FACTS = 3

PERPLEXITY_ENDPOINT = os.getenv("PERPLEXITY_ENDPOINT", "https://api.perplexity.ai/search")
try:
    RETRIEVAL_TIMEOUT_SECS = float(os.getenv("RETRIEVAL_TIMEOUT_SECS", "8"))
except Exception:
    RETRIEVAL_TIMEOUT_SECS = 8.0

_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")

SYSTEM_PREAMBLE = """
You are SOYL's AI Designer. OUTPUT MUST BE A JSON OBJECT with keys:
"title", "placements" (array), "palette" (array of #HEX), "fonts" (optional), "production_notes" (string).
Each placement object: { area:"front|back|sleeve", type:"text|image|shape", x, y, width, height, content:{...} }.
Do NOT include explanatory text outside JSON. If you cannot produce a design, return {"error":"explain reason"}.
""".strip()

STRICT_JSON_SUFFIX = "\nReturn only JSON with no leading/trailing text. Strict JSON."


def sanitize_brief(text: Optional[str]) -> str:
    """Strip ASCII control characters, trim, cap at MAX_BRIEF_LENGTH.

    Truncation happens after trimming so the result never exceeds the cap and
    re-sanitizing a sanitized brief is a no-op.
    """
    if not text:
        return ""
    safe = _CONTROL_RE.sub("", str(text)).strip()
    if len(safe) > MAX_BRIEF_LENGTH:
        safe = safe[:MAX_BRIEF_LENGTH].rstrip()
    return safe


def prompt_hash(text: str) -> str:
    h = hashlib.sha256()
    h.update((text or "").encode("utf-8"))
    return h.hexdigest()


def _num(v: float) -> Any:
    return int(v) if float(v).is_integer() else v


class Retriever(Protocol):
    def facts(self, query: str) -> List[Dict[str, str]]:
        ...


class PerplexityRetriever:
    """Fetch up to MAX_FACTS short facts for a brief; any failure yields []."""

    def __init__(self, credentials: Optional[CredentialResolver] = None, endpoint: str = PERPLEXITY_ENDPOINT) -> None:
        self.credentials = credentials or default_resolver()
        self.endpoint = endpoint

    def facts(self, query: str) -> List[Dict[str, str]]:
        api_key = self.credentials.resolve(PERPLEXITY)
        if not api_key:
            return []
        try:
            resp = requests.post(
                self.endpoint,
                headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
                json={"query": query, "limit": MAX_FACTS},
                timeout=RETRIEVAL_TIMEOUT_SECS,
            )
        except Exception as exc:
            log.warning("retrieval: request error %r", exc)
            return []
        if resp.status_code != 200:
            log.warning("retrieval: HTTP %s", resp.status_code)
            return []
        try:
            data = resp.json()
        except Exception:
            log.warning("retrieval: non-JSON body")
            return []
        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            return []
        out: List[Dict[str, str]] = []
        for item in results[:MAX_FACTS]:
            if not isinstance(item, dict):
                continue
            out.append({
                "text": str(item.get("text") or item.get("snippet") or ""),
                "source": str(item.get("source") or ""),
            })
        return out


def _retrieval_context(brief: str, retriever: Optional[Retriever]) -> str:
    if retriever is None:
        return ""
    try:
        facts = retriever.facts(brief) or []
    except Exception:
        log.warning("retrieval: retriever raised; continuing without context", exc_info=True)
        return ""
    lines = [f"Fact: {f.get('text', '')} (source: {f.get('source', '')})" for f in facts[:MAX_FACTS]]
    return "\n".join(lines)


def build_prompt(request: DesignRequest, retriever: Optional[Retriever] = None) -> Tuple[str, str]:
    """Return (prompt, sha256 of prompt) for a design request.

    Raises EmptyBrief when nothing is left of the brief after sanitizing.
    """
    brief = sanitize_brief(request.brief)
    if not brief:
        raise EmptyBrief()
    canvas = request.canvas
    canvas_json = json.dumps({"w": _num(canvas.w), "h": _num(canvas.h)}, separators=(",", ":"))
    user = (
        f"Brief: {brief}\n"
        f"Product: {request.product}\n"
        f"Canvas: {canvas_json}\n"
        f"Style: {request.style}\n"
    )
    if request.wants_retrieval:
        context = _retrieval_context(brief, retriever)
        if context:
            user += f"\nContext:\n{context}\n"
    prompt = f"{SYSTEM_PREAMBLE}\n\n{user}"
    return prompt, prompt_hash(prompt)


def build_image_prompt(design: Design, request: Optional[DesignRequest] = None) -> str:
    """Text prompt for the image providers, derived from the validated design."""
    product = request.product if request else "t-shirt"
    style = request.style if request else "classic vintage"
    texts = [
        str(p.content.get("text"))
        for p in design.placements
        if p.type == "text" and p.content.get("text")
    ]
    parts = [
        f"Flat product mockup of a {product} print design titled \"{design.title}\".",
        f"Style: {style}.",
    ]
    if design.palette:
        parts.append("Palette: " + ", ".join(design.palette[:6]) + ".")
    if texts:
        parts.append("Typography reads: " + " / ".join(t[:80] for t in texts[:4]) + ".")
    areas = sorted({p.area for p in design.placements})
    if areas:
        parts.append("Print areas: " + ", ".join(areas) + ".")
    return " ".join(parts)
