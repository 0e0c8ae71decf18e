"""Image job worker.

One job renders one preview: generate image bytes, upload them under a
deterministic key, then append the preview to the design record. Failures
after the payload is parsed propagate so the queue redelivers the message.
Malformed payloads and jobs for unknown designs are logged and dropped.
"""
from __future__ import annotations

import enum
import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from designgen.assets import get_asset_store, preview_key
from designgen.dispatch import REDIS_QUEUE_KEY, REDIS_URL, ImageJob
from designgen.errors import NotFound, PoisonMessage
from designgen.image_client import ImageGateway
from designgen.models import PreviewEntry
from designgen.store import get_store

log = logging.getLogger(__name__)

try:
    REDIS_MAX_ATTEMPTS = int(os.getenv("REDIS_MAX_ATTEMPTS", "5"))
except Exception:
    REDIS_MAX_ATTEMPTS = 5


class JobState(str, enum.Enum):
    QUEUED = "QUEUED"
    GENERATING = "GENERATING"
    UPLOADED = "UPLOADED"
    RECORD_UPDATED = "RECORD_UPDATED"
    FAILED = "FAILED"


@dataclass
class JobOutcome:
    job: Optional[ImageJob] = None
    state: JobState = JobState.QUEUED
    trace: List[JobState] = field(default_factory=lambda: [JobState.QUEUED])
    storage_key: Optional[str] = None
    url: Optional[str] = None
    error: Optional[str] = None

    def advance(self, state: JobState) -> None:
        self.state = state
        self.trace.append(state)


class ImageJobRunner:
    def __init__(self, gateway: Optional[ImageGateway] = None, assets=None, store=None) -> None:
        self.gateway = gateway or ImageGateway()
        self.assets = assets or get_asset_store()
        self.store = store or get_store()

    def run(self, payload: Any) -> JobOutcome:
        """Process one job payload.

        Returns the outcome for poison payloads and unknown designs (state
        FAILED, nothing retried). Any other failure is re-raised after
        recording FAILED.
        """
        outcome = JobOutcome()
        try:
            job = ImageJob.from_payload(payload)
        except PoisonMessage as exc:
            outcome.advance(JobState.FAILED)
            outcome.error = str(exc)
            log.warning("worker.job: dropping poison message: %s", exc)
            return outcome
        outcome.job = job
        started = time.time()
        try:
            self.store.get(job.designId)
            outcome.advance(JobState.GENERATING)
            image = self.gateway.generate_image(job.prompt, job.designId)

            key = preview_key(job.designId, job.index)
            self.assets.put(key, image, "image/png")
            outcome.storage_key = key
            outcome.advance(JobState.UPLOADED)

            url = self.assets.url_for(key)
            outcome.url = url
            self.store.append_preview(job.designId, PreviewEntry(storageKey=key, url=url))
            outcome.advance(JobState.RECORD_UPDATED)
        except NotFound as exc:
            outcome.advance(JobState.FAILED)
            outcome.error = str(exc)
            log.warning("worker.job: dropping job for unknown design_id=%s index=%d", job.designId, job.index)
            return outcome
        except Exception as exc:
            outcome.advance(JobState.FAILED)
            outcome.error = str(exc)
            log.exception("worker.job: failed design_id=%s index=%d", job.designId, job.index)
            raise
        log.info(
            "worker.job: done design_id=%s index=%d key=%s dur_ms=%d",
            job.designId, job.index, key, int((time.time() - started) * 1000),
        )
        return outcome


def handle_sqs_event(event: Dict[str, Any], context: Any = None, runner: Optional[ImageJobRunner] = None) -> Dict[str, Any]:
    """Lambda entry for SQS batches.

    Failed records are reported in ``batchItemFailures`` so only they are
    redelivered; the event source mapping must enable ReportBatchItemFailures.
    """
    runner = runner or ImageJobRunner()
    records = (event or {}).get("Records") or []
    failures: List[Dict[str, str]] = []
    for record in records:
        try:
            runner.run(record.get("body"))
        except Exception:
            failures.append({"itemIdentifier": record.get("messageId", "")})
    if failures:
        log.warning("worker.sqs: %d of %d records failed", len(failures), len(records))
    return {"batchItemFailures": failures}


def _requeue_body(body: str) -> Optional[str]:
    """Bump the attempts counter; None once the job has used REDIS_MAX_ATTEMPTS."""
    try:
        payload = json.loads(body)
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    try:
        attempts = int(payload.get("attempts", 0)) + 1
    except (TypeError, ValueError):
        attempts = 1
    if attempts >= REDIS_MAX_ATTEMPTS:
        return None
    payload["attempts"] = attempts
    return json.dumps(payload, ensure_ascii=False)


def run_redis_worker(client=None, key: str = REDIS_QUEUE_KEY, runner: Optional[ImageJobRunner] = None, max_jobs: Optional[int] = None) -> int:
    """BRPOP loop; a failed job goes back to the tail of the queue until it
    has used REDIS_MAX_ATTEMPTS, then it is moved to ``{key}:dead``."""
    if client is None:
        import redis

        client = redis.from_url(REDIS_URL, decode_responses=True)
    runner = runner or ImageJobRunner()
    dead_key = f"{key}:dead"
    handled = 0
    log.info("worker.redis: listening on %s", key)
    while max_jobs is None or handled < max_jobs:
        item = client.brpop(key, timeout=5)
        if not item:
            continue
        _, body = item
        handled += 1
        try:
            runner.run(body)
        except Exception:
            retry = _requeue_body(body)
            if retry is None:
                log.error("worker.redis: job exhausted retries, moved to %s", dead_key)
                client.lpush(dead_key, body)
            else:
                client.lpush(key, retry)
    return handled


if __name__ == "__main__":
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_redis_worker()
