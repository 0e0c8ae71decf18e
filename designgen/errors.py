from __future__ import annotations

from typing import Optional


class DesignGenError(Exception):
    """Base class for errors raised by the design generation workflow."""


class ValidationError(DesignGenError):
    """Rejected synchronously (400); never retried."""


class EmptyBrief(ValidationError):
    def __init__(self, message: str = "brief required") -> None:
        super().__init__(message)


class ProviderError(DesignGenError):
    """Text provider transport failure, or retry budget exhausted (502)."""

    def __init__(self, message: str, provider: Optional[str] = None) -> None:
        super().__init__(message)
        self.provider = provider


class ProviderUnavailable(ProviderError):
    """No credential resolvable for the provider."""


class ParseFailure(DesignGenError):
    """Provider output is not a Design-shaped JSON object."""

    def __init__(self, message: str, raw: Optional[str] = None) -> None:
        super().__init__(message)
        self.raw = raw


class StoreError(DesignGenError):
    """Design store transport failure."""


class NotFound(DesignGenError):
    def __init__(self, design_id: str) -> None:
        super().__init__(f"design not found: {design_id}")
        self.design_id = design_id


class PoisonMessage(DesignGenError):
    """Malformed job payload; dropped without retry."""
