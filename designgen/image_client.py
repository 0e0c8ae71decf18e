from __future__ import annotations

import base64
import hashlib
import io
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import requests

from designgen.credentials import (
    GEMINI,
    OPENAI,
    REPLICATE,
    STABILITY,
    CredentialResolver,
    default_resolver,
)

log = logging.getLogger(__name__)

PLACEHOLDER = "placeholder"
IMAGE_PROVIDERS = (GEMINI, OPENAI, STABILITY, REPLICATE, PLACEHOLDER)

IMAGE_PROVIDER = os.getenv("IMAGE_PROVIDER", PLACEHOLDER).strip().lower()
GEMINI_IMAGE_ENDPOINT = os.getenv(
    "GEMINI_IMAGE_ENDPOINT",
    "https://generativelanguage.googleapis.com/v1beta/models/imagen-3.0-generate-001:generateImage",
)
OPENAI_IMAGE_ENDPOINT = os.getenv("OPENAI_IMAGE_ENDPOINT", "https://api.openai.com/v1/images/generations")
STABILITY_ENDPOINT = os.getenv(
    "STABILITY_ENDPOINT",
    "https://api.stability.ai/v1/generation/stable-diffusion-xl-1024-v1-0/text-to-image",
)
REPLICATE_ENDPOINT = os.getenv("REPLICATE_ENDPOINT", "https://api.replicate.com/v1/predictions")
REPLICATE_MODEL = os.getenv(
    "REPLICATE_MODEL",
    "stability-ai/sdxl:39ed52f2a78e934b3ba6e2a89f5b1c712de7dfea535525255b1aa35c5565e08b",
)

try:
    IMAGE_TIMEOUT_SECS = float(os.getenv("IMAGE_TIMEOUT_SECS", "90"))
except Exception:
    IMAGE_TIMEOUT_SECS = 90.0
try:
    REPLICATE_POLL_ATTEMPTS = int(os.getenv("REPLICATE_POLL_ATTEMPTS", "30"))
except Exception:
    REPLICATE_POLL_ATTEMPTS = 30
try:
    REPLICATE_POLL_INTERVAL_SECS = float(os.getenv("REPLICATE_POLL_INTERVAL_SECS", "10"))
except Exception:
    REPLICATE_POLL_INTERVAL_SECS = 10.0

PLACEHOLDER_SIZE = (1200, 1400)


@dataclass
class ImageGenResult:
    success: bool
    image_bytes: Optional[bytes] = None
    error: Optional[str] = None


def _fail(msg: str) -> ImageGenResult:
    return ImageGenResult(success=False, error=msg)


def _download(url: str) -> ImageGenResult:
    try:
        resp = requests.get(url, timeout=IMAGE_TIMEOUT_SECS)
    except requests.RequestException as exc:
        return _fail(f"image download error: {exc!r}")
    if resp.status_code != 200 or not resp.content:
        return _fail(f"image download HTTP {resp.status_code}")
    return ImageGenResult(success=True, image_bytes=resp.content)


def _decode_b64(data: Optional[str], provider: str) -> ImageGenResult:
    if not data:
        return _fail(f"no image data received from {provider}")
    try:
        return ImageGenResult(success=True, image_bytes=base64.b64decode(data))
    except (TypeError, ValueError) as exc:
        return _fail(f"{provider}: bad base64 image: {exc}")


class GeminiImageProvider:
    name = GEMINI

    def __init__(self, credentials: CredentialResolver) -> None:
        self.credentials = credentials

    def generate(self, prompt: str, design_id: str) -> ImageGenResult:
        api_key = self.credentials.resolve(GEMINI)
        if not api_key:
            return _fail("no Gemini credential")
        body = {
            "prompt": {"text": prompt},
            "config": {
                "number_of_images": 1,
                "aspect_ratio": "3:4",
                "safety_filter_level": "block_some",
                "person_generation": "allow_adult",
            },
        }
        try:
            resp = requests.post(GEMINI_IMAGE_ENDPOINT, params={"key": api_key}, json=body, timeout=IMAGE_TIMEOUT_SECS)
            if resp.status_code != 200:
                return _fail(f"Gemini image HTTP {resp.status_code}: {resp.text[:300]}")
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            return _fail(f"Gemini image error: {exc!r}")
        images = data.get("generatedImages") if isinstance(data, dict) else None
        first = images[0] if isinstance(images, list) and images else {}
        return _decode_b64(first.get("imageBase64") if isinstance(first, dict) else None, "Gemini")


class OpenAIImageProvider:
    name = OPENAI

    def __init__(self, credentials: CredentialResolver) -> None:
        self.credentials = credentials

    def generate(self, prompt: str, design_id: str) -> ImageGenResult:
        api_key = self.credentials.resolve(OPENAI)
        if not api_key:
            return _fail("no OpenAI credential")
        body = {
            "model": "dall-e-3",
            "prompt": prompt,
            "n": 1,
            "size": "1024x1024",
            "quality": "standard",
            "style": "vivid",
        }
        headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        try:
            resp = requests.post(OPENAI_IMAGE_ENDPOINT, headers=headers, json=body, timeout=IMAGE_TIMEOUT_SECS)
            if resp.status_code != 200:
                return _fail(f"OpenAI image HTTP {resp.status_code}: {resp.text[:300]}")
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            return _fail(f"OpenAI image error: {exc!r}")
        try:
            url = data["data"][0]["url"]
        except (KeyError, IndexError, TypeError):
            url = None
        if not url:
            return _fail("no image URL received from OpenAI")
        return _download(url)


class StabilityImageProvider:
    name = STABILITY

    def __init__(self, credentials: CredentialResolver) -> None:
        self.credentials = credentials

    def generate(self, prompt: str, design_id: str) -> ImageGenResult:
        api_key = self.credentials.resolve(STABILITY)
        if not api_key:
            return _fail("no Stability credential")
        body = {
            "text_prompts": [{"text": prompt, "weight": 1}],
            "cfg_scale": 7,
            "height": 1024,
            "width": 1024,
            "samples": 1,
            "steps": 30,
            "style_preset": "photographic",
        }
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        try:
            resp = requests.post(STABILITY_ENDPOINT, headers=headers, json=body, timeout=IMAGE_TIMEOUT_SECS)
            if resp.status_code != 200:
                return _fail(f"Stability HTTP {resp.status_code}: {resp.text[:300]}")
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            return _fail(f"Stability error: {exc!r}")
        artifacts = data.get("artifacts") if isinstance(data, dict) else None
        first = artifacts[0] if isinstance(artifacts, list) and artifacts else {}
        return _decode_b64(first.get("base64") if isinstance(first, dict) else None, "Stability")


class ReplicateImageProvider:
    """Starts a prediction and polls it at a fixed interval, up to a fixed number of checks."""

    name = REPLICATE

    def __init__(
        self,
        credentials: CredentialResolver,
        model: str = REPLICATE_MODEL,
        poll_attempts: int = REPLICATE_POLL_ATTEMPTS,
        poll_interval: float = REPLICATE_POLL_INTERVAL_SECS,
        sleep: Callable[[float], None] = time.sleep,
        session: Any = requests,
    ) -> None:
        self.credentials = credentials
        self.model = model
        self.poll_attempts = max(1, int(poll_attempts))
        self.poll_interval = poll_interval
        self.sleep = sleep
        self.session = session

    def generate(self, prompt: str, design_id: str) -> ImageGenResult:
        api_key = self.credentials.resolve(REPLICATE)
        if not api_key:
            return _fail("no Replicate credential")
        headers = {"Authorization": f"Token {api_key}", "Content-Type": "application/json"}
        version = self.model.split(":", 1)[-1]
        body = {
            "version": version,
            "input": {
                "prompt": prompt,
                "width": 1024,
                "height": 1024,
                "num_outputs": 1,
                "scheduler": "K_EULER",
                "num_inference_steps": 20,
                "guidance_scale": 7.5,
                "prompt_strength": 0.8,
            },
        }
        try:
            start = self.session.post(REPLICATE_ENDPOINT, headers=headers, json=body, timeout=IMAGE_TIMEOUT_SECS)
            if start.status_code not in (200, 201):
                return _fail(f"Replicate HTTP {start.status_code}: {start.text[:300]}")
            prediction_id = (start.json() or {}).get("id")
        except (requests.RequestException, ValueError) as exc:
            return _fail(f"Replicate error: {exc!r}")
        if not prediction_id:
            return _fail("Replicate returned no prediction id")

        status_url = f"{REPLICATE_ENDPOINT}/{prediction_id}"
        for attempt in range(self.poll_attempts):
            self.sleep(self.poll_interval)
            try:
                resp = self.session.get(status_url, headers=headers, timeout=IMAGE_TIMEOUT_SECS)
                if resp.status_code != 200:
                    return _fail("failed to check prediction status")
                status = resp.json() or {}
            except (requests.RequestException, ValueError) as exc:
                return _fail(f"Replicate poll error: {exc!r}")
            state = status.get("status")
            if state == "succeeded":
                output = status.get("output")
                url = output[0] if isinstance(output, list) and output else output
                if not url or not isinstance(url, str):
                    return _fail("no image URL in prediction output")
                return _download(url)
            if state in ("failed", "canceled"):
                return _fail(f"prediction {state}: {status.get('error')}")
            log.debug("image.replicate: prediction=%s status=%s attempt=%d", prediction_id, state, attempt + 1)
        return _fail("prediction timed out")


class PlaceholderImageProvider:
    """Local PNG mockup; same design id always yields the same bytes."""

    name = PLACEHOLDER

    def __init__(self, size=PLACEHOLDER_SIZE) -> None:
        self.size = size

    def render(self, design_id: str) -> bytes:
        from PIL import Image, ImageDraw, ImageFont

        digest = hashlib.sha1(design_id.encode("utf-8")).digest()
        accent = (digest[0], digest[1], digest[2])
        w, h = self.size
        img = Image.new("RGB", (w, h), "#000000")
        draw = ImageDraw.Draw(img)
        # print area, roughly where a chest print sits on a 1200x1400 mockup
        box = (int(w * 0.25), int(h * 0.2), int(w * 0.75), int(h * 0.6))
        draw.rectangle(box, outline=accent, width=8)
        draw.rectangle((box[0] + 24, box[1] + 24, box[2] - 24, box[1] + 120), fill=accent)
        label = f"SOYL Design {design_id[:8]}"
        font = ImageFont.load_default()
        bbox = draw.textbbox((0, 0), label, font=font)
        tw, th = bbox[2] - bbox[0], bbox[3] - bbox[1]
        draw.text(((w - tw) // 2, int(h * 0.7) - th // 2), label, fill="#FFFFFF", font=font)
        buf = io.BytesIO()
        img.save(buf, format="PNG")
        return buf.getvalue()

    def generate(self, prompt: str, design_id: str) -> ImageGenResult:
        try:
            return ImageGenResult(success=True, image_bytes=self.render(design_id))
        except Exception as exc:
            return _fail(f"placeholder render error: {exc!r}")


# 1x1 PNG, used only if Pillow itself fails
_FALLBACK_PNG = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)


def build_image_provider(name: str, credentials: CredentialResolver):
    if name == GEMINI:
        return GeminiImageProvider(credentials)
    if name == OPENAI:
        return OpenAIImageProvider(credentials)
    if name == STABILITY:
        return StabilityImageProvider(credentials)
    if name == REPLICATE:
        return ReplicateImageProvider(credentials)
    return PlaceholderImageProvider()


class ImageGateway:
    """Configured provider first, then the placeholder. ``generate_image`` never raises."""

    def __init__(
        self,
        provider_name: Optional[str] = None,
        credentials: Optional[CredentialResolver] = None,
        provider: Any = None,
        placeholder: Optional[PlaceholderImageProvider] = None,
    ) -> None:
        name = (provider_name or IMAGE_PROVIDER).strip().lower()
        if name not in IMAGE_PROVIDERS:
            log.warning("image: unknown provider %r, using placeholder", name)
            name = PLACEHOLDER
        self.credentials = credentials or default_resolver()
        self.provider = provider or build_image_provider(name, self.credentials)
        self.placeholder = placeholder or PlaceholderImageProvider()

    def generate_image(self, prompt: str, design_id: str) -> bytes:
        chain = [self.placeholder] if self.provider.name == PLACEHOLDER else [self.provider, self.placeholder]
        for provider in chain:
            try:
                result = provider.generate(prompt, design_id)
            except Exception as exc:
                result = _fail(f"{provider.name} raised {exc!r}")
            if result.success and result.image_bytes:
                log.info("image: provider=%s design_id=%s bytes=%d", provider.name, design_id, len(result.image_bytes))
                return result.image_bytes
            log.warning("image: provider=%s failed for design_id=%s: %s", provider.name, design_id, result.error)
        return _FALLBACK_PNG

    def status(self) -> Dict[str, Any]:
        return {"provider": self.provider.name}
