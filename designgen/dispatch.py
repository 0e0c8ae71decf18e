"""Image job fan-out.

Dispatch is fire-and-forget from the request's point of view: every
``enqueue_image_job`` logs and returns False on failure instead of raising.
"""
from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import asdict, dataclass
from typing import Any, Optional

from designgen.errors import PoisonMessage

log = logging.getLogger(__name__)

JOB_QUEUE = os.getenv("JOB_QUEUE", "inline").strip().lower()
SQS_QUEUE_URL = os.getenv("SQS_QUEUE_URL", "").strip()
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
REDIS_QUEUE_KEY = os.getenv("REDIS_QUEUE_KEY", "designgen:image-jobs")
AWS_REGION = os.getenv("AWS_REGION", "us-east-1")


@dataclass(frozen=True)
class ImageJob:
    designId: str
    prompt: str
    index: int = 1

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False)

    @classmethod
    def from_payload(cls, payload: Any) -> "ImageJob":
        """Parse a queue body (str/bytes/dict); malformed payloads raise PoisonMessage."""
        if isinstance(payload, (bytes, bytearray)):
            payload = payload.decode("utf-8", errors="replace")
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except ValueError as exc:
                raise PoisonMessage(f"job body is not JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise PoisonMessage("job body is not an object")
        design_id = payload.get("designId")
        prompt = payload.get("prompt")
        if not isinstance(design_id, str) or not design_id.strip():
            raise PoisonMessage("job missing designId")
        if not isinstance(prompt, str) or not prompt.strip():
            raise PoisonMessage("job missing prompt")
        try:
            index = int(payload.get("index", 1))
        except (TypeError, ValueError):
            index = 1
        return cls(designId=design_id.strip(), prompt=prompt, index=max(1, index))


class Dispatcher:
    def send(self, job: ImageJob) -> None:
        raise NotImplementedError

    def enqueue_image_job(self, design_id: str, prompt: str, index: int = 1) -> bool:
        job = ImageJob(designId=design_id, prompt=prompt, index=max(1, int(index)))
        try:
            self.send(job)
        except Exception:
            log.exception("dispatch.enqueue: failed design_id=%s index=%d via=%s", design_id, job.index, type(self).__name__)
            return False
        log.info("dispatch.enqueue: queued design_id=%s index=%d via=%s", design_id, job.index, type(self).__name__)
        return True


class SqsDispatcher(Dispatcher):
    def __init__(self, client=None, queue_url: Optional[str] = None) -> None:
        if client is None:
            import boto3

            client = boto3.client("sqs", region_name=AWS_REGION)
        self._sqs = client
        self.queue_url = queue_url or SQS_QUEUE_URL

    def send(self, job: ImageJob) -> None:
        if not self.queue_url:
            raise RuntimeError("SQS_QUEUE_URL not configured")
        self._sqs.send_message(QueueUrl=self.queue_url, MessageBody=job.to_json())


class RedisQueueDispatcher(Dispatcher):
    def __init__(self, client=None, key: str = REDIS_QUEUE_KEY) -> None:
        if client is None:
            import redis

            client = redis.from_url(REDIS_URL, decode_responses=True)
        self._r = client
        self.key = key

    def send(self, job: ImageJob) -> None:
        self._r.lpush(self.key, job.to_json())


class InlineDispatcher(Dispatcher):
    """Runs each job on a daemon thread in this process (local development)."""

    def __init__(self, runner_factory=None) -> None:
        self._runner_factory = runner_factory

    def _runner(self):
        if self._runner_factory is not None:
            return self._runner_factory()
        from designgen.worker import ImageJobRunner

        return ImageJobRunner()

    def _run(self, job: ImageJob) -> None:
        try:
            self._runner().run(asdict(job))
        except Exception:
            log.exception("dispatch.inline: job failed design_id=%s index=%d", job.designId, job.index)

    def send(self, job: ImageJob) -> None:
        t = threading.Thread(target=self._run, args=(job,), daemon=True)
        t.start()


_dispatcher: Optional[Dispatcher] = None
_dispatcher_lock = threading.Lock()


def get_dispatcher() -> Dispatcher:
    global _dispatcher
    with _dispatcher_lock:
        if _dispatcher is None:
            if JOB_QUEUE == "sqs":
                _dispatcher = SqsDispatcher()
            elif JOB_QUEUE == "redis":
                _dispatcher = RedisQueueDispatcher()
            else:
                _dispatcher = InlineDispatcher()
        return _dispatcher