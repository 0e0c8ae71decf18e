import json
import threading

from designgen.dispatch import ImageJob, InlineDispatcher, RedisQueueDispatcher, SqsDispatcher


class FakeSqs:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def send_message(self, QueueUrl, MessageBody):
        if self.fail:
            raise RuntimeError("throttled")
        self.sent.append((QueueUrl, json.loads(MessageBody)))
        return {"MessageId": "m-1"}


def test_sqs_dispatch_sends_job_payload():
    sqs = FakeSqs()
    d = SqsDispatcher(client=sqs, queue_url="https://sqs/q")
    assert d.enqueue_image_job("d-1", "gold tee", 2) is True
    assert sqs.sent == [("https://sqs/q", {"designId": "d-1", "prompt": "gold tee", "index": 2})]


def test_sqs_failure_is_reported_not_raised():
    assert SqsDispatcher(client=FakeSqs(fail=True), queue_url="https://sqs/q").enqueue_image_job("d-1", "p") is False


def test_sqs_without_queue_url_returns_false():
    assert SqsDispatcher(client=FakeSqs(), queue_url="").enqueue_image_job("d-1", "p") is False


class FakeRedis:
    def __init__(self):
        self.pushed = []

    def lpush(self, key, value):
        self.pushed.append((key, value))


def test_redis_dispatch_lpushes():
    r = FakeRedis()
    assert RedisQueueDispatcher(client=r, key="jobs").enqueue_image_job("d-1", "p", 1) is True
    key, value = r.pushed[0]
    assert key == "jobs"
    assert ImageJob.from_payload(value) == ImageJob("d-1", "p", 1)


def test_inline_dispatch_runs_job_in_background():
    done = threading.Event()
    seen = []

    class Runner:
        def run(self, payload):
            seen.append(payload)
            done.set()

    d = InlineDispatcher(runner_factory=Runner)
    assert d.enqueue_image_job("d-1", "p", 1) is True
    assert done.wait(5)
    assert seen == [{"designId": "d-1", "prompt": "p", "index": 1}]


def test_job_index_defaults_and_floors_at_one():
    assert ImageJob.from_payload({"designId": "d", "prompt": "p"}).index == 1
    assert ImageJob.from_payload({"designId": "d", "prompt": "p", "index": 0}).index == 1
