import json

import pytest
import requests

from designgen import llm_client
from designgen.credentials import StaticCredentialResolver
from designgen.errors import ProviderError, ProviderUnavailable
from designgen.llm_client import (
    GeminiTextProvider,
    MockTextProvider,
    OpenAITextProvider,
    TextGateway,
)
from designgen.models import DesignRequest
from designgen.prompts import STRICT_JSON_SUFFIX

GOOD = json.dumps({"title": "Goa", "placements": [{"type": "text", "content": {"text": "GOA"}}], "palette": ["#000000"]})


class FakeProvider:
    def __init__(self, name, outputs):
        self.name = name
        self.outputs = list(outputs)
        self.prompts = []

    def generate(self, prompt):
        self.prompts.append(prompt)
        assert self.outputs, "provider called more times than expected"
        out = self.outputs.pop(0)
        if isinstance(out, Exception):
            raise out
        return out


def _req():
    return DesignRequest(brief="Goa beach sunset")


def test_first_available_provider_wins():
    a = FakeProvider("gemini", [GOOD])
    b = FakeProvider("openai", [GOOD])
    design, provider = TextGateway([a, b], StaticCredentialResolver()).generate_design("p", _req())
    assert provider == "gemini"
    assert design.title == "Goa"
    assert b.prompts == []


def test_unavailable_provider_is_skipped():
    a = FakeProvider("gemini", [ProviderUnavailable("no key", provider="gemini")])
    b = FakeProvider("openai", [GOOD])
    _, provider = TextGateway([a, b], StaticCredentialResolver()).generate_design("p", _req())
    assert provider == "openai"


def test_provider_error_falls_through_to_next():
    a = FakeProvider("gemini", [ProviderError("HTTP 500", provider="gemini")])
    b = FakeProvider("openai", [GOOD])
    _, provider = TextGateway([a, b], StaticCredentialResolver()).generate_design("p", _req())
    assert provider == "openai"


def test_mock_used_only_when_no_credentials():
    a = FakeProvider("gemini", [ProviderUnavailable("no key")])
    b = FakeProvider("openai", [ProviderUnavailable("no key")])
    design, provider = TextGateway([a, b], StaticCredentialResolver()).generate_design("p", _req())
    assert provider == "mock"
    assert design.placements


def test_two_failures_exactly_two_calls_then_provider_error():
    a = FakeProvider("gemini", [ProviderError("boom"), ProviderError("boom")])
    gw = TextGateway([a], StaticCredentialResolver())
    with pytest.raises(ProviderError):
        gw.generate_design("p", _req())
    assert len(a.prompts) == 2
    # bare retry: the prompt is not amended after a transport failure
    assert a.prompts == ["p", "p"]


def test_malformed_then_valid_amends_prompt():
    a = FakeProvider("gemini", ["Sure! here you go {", GOOD])
    design, provider = TextGateway([a], StaticCredentialResolver()).generate_design("p", _req())
    assert provider == "gemini"
    assert design.title == "Goa"
    assert a.prompts[0] == "p"
    assert a.prompts[1] == "p" + STRICT_JSON_SUFFIX


def test_malformed_twice_raises_provider_error():
    a = FakeProvider("gemini", ["nope", "still nope"])
    with pytest.raises(ProviderError) as ei:
        TextGateway([a], StaticCredentialResolver()).generate_design("p", _req())
    assert "invalid JSON" in str(ei.value)
    assert len(a.prompts) == 2


def test_status_reports_configured_provider():
    creds = StaticCredentialResolver({"openai": "sk-test"})
    gw = TextGateway(credentials=creds)
    assert gw.status() == {"provider": "openai", "has_token": True, "using": "openai"}
    assert TextGateway(credentials=StaticCredentialResolver()).status()["using"] == "mock"


class FakeResp:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text or json.dumps(payload or {})

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


def test_gemini_adapter_extracts_candidate_text(monkeypatch):
    seen = {}

    def fake_post(url, params=None, json=None, timeout=None, **kw):
        seen.update(url=url, params=params, timeout=timeout, body=json)
        return FakeResp(200, {"candidates": [{"content": {"parts": [{"text": GOOD}]}}]})

    monkeypatch.setattr(llm_client.requests, "post", fake_post)
    out = GeminiTextProvider(StaticCredentialResolver({"gemini": "g-key"})).generate("hello")
    assert out == GOOD
    assert seen["params"] == {"key": "g-key"}
    assert seen["timeout"] == llm_client.LLM_TIMEOUT_SECS
    assert "hello" in seen["body"]["contents"][0]["parts"][0]["text"]


def test_gemini_adapter_without_key_is_unavailable(monkeypatch):
    monkeypatch.setattr(llm_client.requests, "post", lambda *a, **k: pytest.fail("should not call HTTP"))
    with pytest.raises(ProviderUnavailable):
        GeminiTextProvider(StaticCredentialResolver()).generate("hello")


def test_openai_adapter_http_error(monkeypatch):
    monkeypatch.setattr(llm_client.requests, "post", lambda *a, **k: FakeResp(429, {"error": "rate"}))
    with pytest.raises(ProviderError) as ei:
        OpenAITextProvider(StaticCredentialResolver({"openai": "sk"})).generate("hello")
    assert "429" in str(ei.value)
    assert not isinstance(ei.value, ProviderUnavailable)


def test_openai_adapter_transport_error(monkeypatch):
    def boom(*a, **k):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(llm_client.requests, "post", boom)
    with pytest.raises(ProviderError):
        OpenAITextProvider(StaticCredentialResolver({"openai": "sk"})).generate("hello")


def test_openai_adapter_returns_message_content(monkeypatch):
    payload = {"choices": [{"message": {"role": "assistant", "content": GOOD}}]}
    monkeypatch.setattr(llm_client.requests, "post", lambda *a, **k: FakeResp(200, payload))
    assert OpenAITextProvider(StaticCredentialResolver({"openai": "sk"})).generate("hello") == GOOD


def test_gateway_with_real_adapters_and_no_keys_uses_mock(monkeypatch):
    monkeypatch.setattr(llm_client.requests, "post", lambda *a, **k: pytest.fail("should not call HTTP"))
    gw = TextGateway(credentials=StaticCredentialResolver())
    raw, provider = gw.generate_text("p", _req())
    assert provider == "mock"
    assert json.loads(raw) == MockTextProvider(_req()).design_doc()


def test_mock_design_text_is_sanitized():
    req = DesignRequest(brief="Goa\x00\x07 trip\x1b[31m")
    doc = MockTextProvider(req).design_doc()
    texts = [p["content"].get("text", "") for p in doc["placements"]]
    assert "Goa trip[31m" in texts
    assert not any(ch in "".join(texts) for ch in "\x00\x07\x1b")


def test_two_configured_providers_failing_make_two_upstream_calls_total():
    a = FakeProvider("gemini", [ProviderError("HTTP 500")])
    b = FakeProvider("openai", [ProviderError("HTTP 503")])
    with pytest.raises(ProviderError):
        TextGateway([a, b], StaticCredentialResolver()).generate_design("p", _req())
    assert len(a.prompts) + len(b.prompts) == 2
    assert (len(a.prompts), len(b.prompts)) == (1, 1)


def test_malformed_retry_stays_on_same_provider():
    a = FakeProvider("gemini", ["{oops", GOOD])
    b = FakeProvider("openai", [])
    _, provider = TextGateway([a, b], StaticCredentialResolver()).generate_design("p", _req())
    assert provider == "gemini"
    assert b.prompts == []
