"""Client helpers for submitting a design and waiting for its first preview."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import requests

log = logging.getLogger(__name__)

READY = "ready"
NOT_FOUND = "not_found"
TIMEOUT = "timeout"

DEFAULT_INTERVAL_SECS = 2.5
DEFAULT_MAX_ATTEMPTS = 40


@dataclass
class PollResult:
    outcome: str
    attempts: int
    preview_url: Optional[str] = None
    body: Dict[str, Any] = field(default_factory=dict)

    @property
    def ready(self) -> bool:
        return self.outcome == READY


def submit_design(base_url: str, request: Dict[str, Any], session: Any = requests, timeout: float = 120.0) -> Dict[str, Any]:
    resp = session.post(f"{base_url.rstrip('/')}/designs", json=request, timeout=timeout)
    resp.raise_for_status()
    return resp.json()


def poll_design(
    base_url: str,
    design_id: str,
    interval: float = DEFAULT_INTERVAL_SECS,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    session: Any = requests,
    sleep: Callable[[float], None] = time.sleep,
) -> PollResult:
    """Poll GET /concepts/{id} until a preview URL shows up.

    404 ends polling immediately. A 200 without ``previewUrl`` and transport
    errors both consume an attempt. Running out of attempts returns
    ``timeout``, which means "try again later", not failure.
    """
    url = f"{base_url.rstrip('/')}/concepts/{design_id}"
    for attempt in range(1, max_attempts + 1):
        try:
            resp = session.get(url, timeout=max(interval * 4, 10.0))
        except requests.RequestException as exc:
            log.warning("poller: attempt %d transport error: %s", attempt, exc)
        else:
            if resp.status_code == 404:
                return PollResult(outcome=NOT_FOUND, attempts=attempt)
            if resp.status_code == 200:
                try:
                    body = resp.json()
                except ValueError:
                    body = {}
                preview = body.get("previewUrl") if isinstance(body, dict) else None
                if isinstance(body, dict) and body.get("ready") and preview:
                    return PollResult(outcome=READY, attempts=attempt, preview_url=preview, body=body)
            else:
                log.warning("poller: attempt %d HTTP %s", attempt, resp.status_code)
        if attempt < max_attempts:
            sleep(interval)
    return PollResult(outcome=TIMEOUT, attempts=max_attempts)
