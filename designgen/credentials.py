"""Provider credential resolution.

Keys are looked up at call time through a ``CredentialResolver`` passed to the
gateways, so a missing key is an ordinary ``None`` rather than an import-time
failure, and tests can hand in a ``StaticCredentialResolver``.
"""
from __future__ import annotations

import logging
import os
import threading
from typing import Dict, Iterable, Mapping, Optional, Protocol

log = logging.getLogger(__name__)

GEMINI = "gemini"
OPENAI = "openai"
STABILITY = "stability"
REPLICATE = "replicate"
PERPLEXITY = "perplexity"

ENV_NAMES: Dict[str, str] = {
    GEMINI: "GEMINI_API_KEY",
    OPENAI: "OPENAI_API_KEY",
    STABILITY: "STABILITY_API_KEY",
    REPLICATE: "REPLICATE_API_TOKEN",
    PERPLEXITY: "PERPLEXITY_API_KEY",
}

SECRET_NAMES: Dict[str, str] = {
    GEMINI: os.getenv("GEMINI_SECRET_NAME", "SOYL/GEMINI_API_KEY"),
    OPENAI: os.getenv("OPENAI_SECRET_NAME", "SOYL/OPENAI_API_KEY"),
    STABILITY: os.getenv("STABILITY_SECRET_NAME", "SOYL/STABILITY_API_KEY"),
    REPLICATE: os.getenv("REPLICATE_SECRET_NAME", "SOYL/REPLICATE_API_TOKEN"),
}

CREDENTIAL_SOURCE = os.getenv("CREDENTIAL_SOURCE", "env").strip().lower()
AWS_REGION = os.getenv("AWS_REGION", "us-east-1")

SECRET_MISSING_CODES = {"ResourceNotFoundException"}


def _error_code(exc: Exception) -> Optional[str]:
    response = getattr(exc, "response", None) or {}
    return (response.get("Error") or {}).get("Code")


class CredentialResolver(Protocol):
    def resolve(self, provider: str) -> Optional[str]:
        ...


class StaticCredentialResolver:
    def __init__(self, keys: Optional[Mapping[str, str]] = None) -> None:
        self._keys = dict(keys or {})

    def resolve(self, provider: str) -> Optional[str]:
        value = (self._keys.get(provider) or "").strip()
        return value or None


class EnvCredentialResolver:
    def __init__(
        self,
        names: Optional[Mapping[str, str]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._names = dict(names or ENV_NAMES)
        self._environ = environ

    def resolve(self, provider: str) -> Optional[str]:
        name = self._names.get(provider)
        if not name:
            return None
        environ = self._environ if self._environ is not None else os.environ
        value = (environ.get(name) or "").strip()
        return value or None


class SecretsManagerCredentialResolver:
    """Reads keys from AWS Secrets Manager; found keys and missing secrets are cached."""

    def __init__(
        self,
        names: Optional[Mapping[str, str]] = None,
        client=None,
        region: Optional[str] = None,
    ) -> None:
        self._names = dict(names or SECRET_NAMES)
        self._client = client
        self._region = region or AWS_REGION
        self._cache: Dict[str, Optional[str]] = {}
        self._lock = threading.Lock()

    def _get_client(self):
        if self._client is None:
            import boto3

            self._client = boto3.client("secretsmanager", region_name=self._region)
        return self._client

    def resolve(self, provider: str) -> Optional[str]:
        secret_id = self._names.get(provider)
        if not secret_id:
            return None
        with self._lock:
            if provider in self._cache:
                return self._cache[provider]
        try:
            res = self._get_client().get_secret_value(SecretId=secret_id)
            value = (res.get("SecretString") or "").strip() or None
        except Exception as exc:
            if _error_code(exc) not in SECRET_MISSING_CODES:
                # transient lookup failure: not cached, next call asks again
                log.warning("credentials: lookup of secret %s failed: %s", secret_id, exc)
                return None
            log.warning("credentials: secret %s not found", secret_id)
            value = None
        with self._lock:
            self._cache[provider] = value
        return value


class ChainedCredentialResolver:
    def __init__(self, resolvers: Iterable[CredentialResolver]) -> None:
        self._resolvers = list(resolvers)

    def resolve(self, provider: str) -> Optional[str]:
        for resolver in self._resolvers:
            value = resolver.resolve(provider)
            if value:
                return value
        return None


def default_resolver() -> CredentialResolver:
    """Environment first; Secrets Manager behind it when CREDENTIAL_SOURCE=secretsmanager."""
    env = EnvCredentialResolver()
    if CREDENTIAL_SOURCE == "secretsmanager":
        return ChainedCredentialResolver([env, SecretsManagerCredentialResolver()])
    return env
