from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

import requests

from designgen.credentials import GEMINI, OPENAI, CredentialResolver, default_resolver
from designgen.errors import ParseFailure, ProviderError, ProviderUnavailable
from designgen.llm_parsing import parse_design
from designgen.models import Design, DesignRequest
from designgen.prompts import STRICT_JSON_SUFFIX, sanitize_brief

log = logging.getLogger(__name__)

MOCK = "mock"
MAX_ATTEMPTS = 2

GEMINI_TEXT_MODEL = os.getenv("GEMINI_TEXT_MODEL", "gemini-1.5-flash").strip()
GEMINI_TEXT_ENDPOINT = os.getenv(
    "GEMINI_TEXT_ENDPOINT",
    f"https://generativelanguage.googleapis.com/v1/models/{GEMINI_TEXT_MODEL}:generateContent",
)
OPENAI_TEXT_MODEL = os.getenv("OPENAI_TEXT_MODEL", "gpt-4o").strip()
OPENAI_CHAT_ENDPOINT = os.getenv("OPENAI_CHAT_ENDPOINT", "https://api.openai.com/v1/chat/completions")

try:
    LLM_TIMEOUT_SECS = float(os.getenv("LLM_TIMEOUT_SECS", "60"))
except Exception:
    LLM_TIMEOUT_SECS = 60.0
try:
    LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.7"))
except Exception:
    LLM_TEMPERATURE = 0.7
try:
    LLM_MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "1200"))
except Exception:
    LLM_MAX_TOKENS = 1200

JSON_ONLY_SYSTEM = "You are a JSON-only design generator. Output only JSON."


class TextProvider(Protocol):
    name: str

    def generate(self, prompt: str) -> str:
        ...


def _http_error(provider: str, resp: Any) -> ProviderError:
    try:
        msg = resp.text[:400]
    except Exception:
        msg = str(resp.status_code)
    return ProviderError(f"{provider} HTTP {resp.status_code}: {msg}", provider=provider)


def _extract_gemini_text(payload: Dict[str, Any]) -> Optional[str]:
    try:
        for cand in payload.get("candidates") or []:
            content = cand.get("content") or {}
            for part in content.get("parts") or []:
                txt = part.get("text")
                if isinstance(txt, str) and txt.strip():
                    return txt
    except AttributeError:
        return None
    return None


class GeminiTextProvider:
    name = GEMINI

    def __init__(self, credentials: CredentialResolver, endpoint: str = GEMINI_TEXT_ENDPOINT) -> None:
        self.credentials = credentials
        self.endpoint = endpoint

    def generate(self, prompt: str) -> str:
        api_key = self.credentials.resolve(GEMINI)
        if not api_key:
            raise ProviderUnavailable("no Gemini credential", provider=self.name)
        body = {
            "contents": [{"parts": [{"text": f"{JSON_ONLY_SYSTEM}\n\n{prompt}"}]}],
            "generationConfig": {
                "temperature": LLM_TEMPERATURE,
                "maxOutputTokens": LLM_MAX_TOKENS,
            },
        }
        try:
            resp = requests.post(self.endpoint, params={"key": api_key}, json=body, timeout=LLM_TIMEOUT_SECS)
        except requests.RequestException as exc:
            raise ProviderError(f"Gemini request error: {exc!r}", provider=self.name) from exc
        if resp.status_code != 200:
            raise _http_error("Gemini", resp)
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError("Gemini: non-JSON HTTP body", provider=self.name) from exc
        text = _extract_gemini_text(data if isinstance(data, dict) else {})
        if not text:
            raise ProviderError("Gemini: empty response text", provider=self.name)
        return text


class OpenAITextProvider:
    name = OPENAI

    def __init__(
        self,
        credentials: CredentialResolver,
        endpoint: str = OPENAI_CHAT_ENDPOINT,
        model: str = OPENAI_TEXT_MODEL,
    ) -> None:
        self.credentials = credentials
        self.endpoint = endpoint
        self.model = model

    def generate(self, prompt: str) -> str:
        api_key = self.credentials.resolve(OPENAI)
        if not api_key:
            raise ProviderUnavailable("no OpenAI credential", provider=self.name)
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": JSON_ONLY_SYSTEM},
                {"role": "user", "content": prompt},
            ],
            "max_tokens": LLM_MAX_TOKENS,
            "temperature": LLM_TEMPERATURE,
        }
        try:
            resp = requests.post(self.endpoint, headers=headers, json=body, timeout=LLM_TIMEOUT_SECS)
        except requests.RequestException as exc:
            raise ProviderError(f"OpenAI request error: {exc!r}", provider=self.name) from exc
        if resp.status_code != 200:
            raise _http_error("OpenAI", resp)
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError("OpenAI: non-JSON HTTP body", provider=self.name) from exc
        try:
            text = data.get("choices", [{}])[0].get("message", {}).get("content")
        except (AttributeError, IndexError):
            text = None
        if not text or not isinstance(text, str):
            raise ProviderError("OpenAI: empty response text", provider=self.name)
        return text


class MockTextProvider:
    """Deterministic stand-in used when no provider credential is configured."""

    name = MOCK

    def __init__(self, request: Optional[DesignRequest] = None) -> None:
        self.request = request

    def design_doc(self) -> Dict[str, Any]:
        req = self.request
        product = req.product if req else "t-shirt"
        style = req.style if req else "classic vintage"
        brief = sanitize_brief(req.brief) if req else ""
        tagline = brief[:50] + ("..." if len(brief) > 50 else "")
        return {
            "title": f"{product.title()} Design - {style.title()}",
            "placements": [
                {
                    "area": "front", "type": "text", "x": 120, "y": 200, "width": 360, "height": 120,
                    "content": {"text": "SOYL - Story Of Your Life"},
                },
                {
                    "area": "front", "type": "text", "x": 120, "y": 350, "width": 360, "height": 80,
                    "content": {"text": tagline or "Your story here"},
                },
                {
                    "area": "back", "type": "shape", "x": 200, "y": 300, "width": 400, "height": 400,
                    "content": {},
                },
            ],
            "palette": ["#D4AF37", "#000000", "#FFFFFF", "#C0C0C0"],
            "fonts": [{"name": "Playfair Display", "size_pt": 48, "weight": "700"}],
            "production_notes": f"Generated for {product} in {style} style",
        }

    def generate(self, prompt: str) -> str:
        return json.dumps(self.design_doc(), ensure_ascii=False)


def default_text_providers(credentials: CredentialResolver) -> List[TextProvider]:
    return [GeminiTextProvider(credentials), OpenAITextProvider(credentials)]


class TextGateway:
    """Ordered provider chain with the two-attempt retry policy."""

    def __init__(
        self,
        providers: Optional[Sequence[TextProvider]] = None,
        credentials: Optional[CredentialResolver] = None,
        max_attempts: int = MAX_ATTEMPTS,
    ) -> None:
        self.credentials = credentials or default_resolver()
        self.providers: List[TextProvider] = list(
            providers if providers is not None else default_text_providers(self.credentials)
        )
        self.max_attempts = max(1, int(max_attempts))

    def _call_once(
        self, prompt: str, request: Optional[DesignRequest], start: int = 0
    ) -> Tuple[Optional[str], str, int, Optional[ProviderError]]:
        """Make at most one upstream call.

        Scans providers from ``start`` (wrapping) and calls the first one with
        a credential. Returns (text, provider_name, index, error). When no
        provider has a credential the mock answers with index -1.
        """
        count = len(self.providers)
        for offset in range(count):
            i = (start + offset) % count
            provider = self.providers[i]
            try:
                text = provider.generate(prompt)
            except ProviderUnavailable:
                log.debug("llm: provider=%s unavailable (no credential)", provider.name)
                continue
            except ProviderError as exc:
                log.warning("llm: provider=%s failed: %s", provider.name, exc)
                return None, provider.name, i, exc
            log.info("llm: chosen provider=%s", provider.name)
            return text, provider.name, i, None
        log.info("llm: no provider credential configured; using mock generator")
        return MockTextProvider(request).generate(prompt), MOCK, -1, None

    def generate_text(self, prompt: str, request: Optional[DesignRequest] = None) -> Tuple[str, str]:
        """Return (raw_text, provider_name) from a single upstream call.

        Providers without a credential are skipped; if none has one, the mock
        generator answers.
        """
        text, name, _, error = self._call_once(prompt, request)
        if error is not None:
            raise error
        return text, name

    def generate_design(self, prompt: str, request: Optional[DesignRequest] = None) -> Tuple[Design, str]:
        """Generate and validate a Design; each attempt is exactly one upstream call.

        A provider error moves the next attempt to the following configured
        provider (the same one when it is the only one). Malformed output is
        retried on the same provider with the strict-JSON suffix.
        """
        current = prompt
        start = 0
        last_exc: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            text, provider, index, error = self._call_once(current, request, start)
            if error is not None:
                last_exc = error
                log.warning("llm: attempt %d/%d provider error: %s", attempt, self.max_attempts, error)
                start = index + 1
                continue
            try:
                return parse_design(text), provider
            except ParseFailure as exc:
                last_exc = exc
                log.warning("llm: attempt %d/%d returned invalid design JSON: %s", attempt, self.max_attempts, exc)
                start = max(index, 0)
                if STRICT_JSON_SUFFIX not in current:
                    current = current + STRICT_JSON_SUFFIX
        if isinstance(last_exc, ParseFailure):
            raise ProviderError(f"LLM returned invalid JSON: {last_exc}") from last_exc
        raise ProviderError(f"LLM provider error: {last_exc}") from last_exc

    def status(self) -> Dict[str, Any]:
        for provider in self.providers:
            if provider.name in (GEMINI, OPENAI) and self.credentials.resolve(provider.name):
                return {"provider": provider.name, "has_token": True, "using": provider.name}
        return {"provider": None, "has_token": False, "using": MOCK}
