import base64
import io

from PIL import Image

from designgen import image_client
from designgen.credentials import StaticCredentialResolver
from designgen.image_client import (
    ImageGateway,
    ImageGenResult,
    PlaceholderImageProvider,
    ReplicateImageProvider,
    StabilityImageProvider,
)

PNG_MAGIC = b"\x89PNG\r\n\x1a\n"


def test_placeholder_is_png_and_deterministic():
    p = PlaceholderImageProvider()
    a = p.render("d-123")
    assert a.startswith(PNG_MAGIC)
    assert p.render("d-123") == a
    assert p.render("d-456") != a
    img = Image.open(io.BytesIO(a))
    assert img.size == image_client.PLACEHOLDER_SIZE


def test_gateway_defaults_to_placeholder():
    gw = ImageGateway("placeholder", StaticCredentialResolver())
    assert gw.generate_image("prompt", "d-1").startswith(PNG_MAGIC)


def test_unknown_provider_name_uses_placeholder():
    gw = ImageGateway("midjourney", StaticCredentialResolver())
    assert gw.provider.name == "placeholder"


class FailingProvider:
    name = "stability"

    def __init__(self, raise_exc=False):
        self.raise_exc = raise_exc
        self.calls = 0

    def generate(self, prompt, design_id):
        self.calls += 1
        if self.raise_exc:
            raise RuntimeError("sdk exploded")
        return ImageGenResult(success=False, error="HTTP 500")


def test_gateway_falls_back_on_failure():
    provider = FailingProvider()
    gw = ImageGateway("stability", StaticCredentialResolver(), provider=provider)
    out = gw.generate_image("prompt", "d-9")
    assert provider.calls == 1
    assert out == PlaceholderImageProvider().render("d-9")


def test_gateway_never_raises():
    gw = ImageGateway("stability", StaticCredentialResolver(), provider=FailingProvider(raise_exc=True))
    assert gw.generate_image("prompt", "d-9").startswith(PNG_MAGIC)


def test_provider_without_key_fails_without_http(monkeypatch):
    def no_http(*a, **k):
        raise AssertionError("no HTTP expected")

    monkeypatch.setattr(image_client.requests, "post", no_http)
    res = StabilityImageProvider(StaticCredentialResolver()).generate("p", "d")
    assert res.success is False


class _Resp:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload
        self.text = str(payload)

    def json(self):
        return self._payload


def test_stability_decodes_artifact(monkeypatch):
    data = b"fake-png-bytes"
    payload = {"artifacts": [{"base64": base64.b64encode(data).decode("ascii")}]}
    monkeypatch.setattr(image_client.requests, "post", lambda *a, **k: _Resp(200, payload))
    res = StabilityImageProvider(StaticCredentialResolver({"stability": "k"})).generate("p", "d")
    assert res.success and res.image_bytes == data


class _ReplicateSession:
    def __init__(self, statuses):
        self.statuses = list(statuses)
        self.gets = 0

    def post(self, url, **kwargs):
        return _Resp(201, {"id": "pred-1"})

    def get(self, url, **kwargs):
        self.gets += 1
        status = self.statuses.pop(0) if self.statuses else "processing"
        return _Resp(200, {"status": status})


def test_replicate_polling_is_bounded():
    sleeps = []
    session = _ReplicateSession([])
    provider = ReplicateImageProvider(
        StaticCredentialResolver({"replicate": "r"}),
        poll_attempts=3,
        poll_interval=10,
        sleep=sleeps.append,
        session=session,
    )
    res = provider.generate("p", "d")
    assert res.success is False
    assert "timed out" in res.error
    assert session.gets == 3
    assert sleeps == [10, 10, 10]


def test_replicate_failed_prediction_stops_early():
    session = _ReplicateSession(["starting", "failed"])
    provider = ReplicateImageProvider(
        StaticCredentialResolver({"replicate": "r"}), poll_attempts=10, sleep=lambda s: None, session=session
    )
    res = provider.generate("p", "d")
    assert res.success is False
    assert session.gets == 2
