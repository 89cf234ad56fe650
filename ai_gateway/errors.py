"""
Gateway error taxonomy.

Errors are classified once, where they occur (adapter or rate limiter), and
carry an explicit kind plus optional HTTP status / network code so retry
decisions are made from data rather than exception introspection.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """What went wrong, independent of the provider."""
    HTTP = "http"
    NETWORK = "network"
    EMPTY_RESPONSE = "empty_response"
    MALFORMED_RESPONSE = "malformed_response"
    UNCONFIGURED = "unconfigured"
    RATE_LIMITED = "rate_limited"
    GENERATION_FAILED = "generation_failed"


class NetworkCode(str, Enum):
    """Transport-level failure codes."""
    CONNECTION_RESET = "connection-reset"
    CONNECTION_FAILED = "connection-failed"
    TIMEOUT = "timeout"


class GatewayError(Exception):
    """Base exception for gateway errors."""

    kind: ErrorKind = ErrorKind.GENERATION_FAILED

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        network_code: Optional[NetworkCode] = None,
        provider: Optional[str] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.network_code = network_code
        self.provider = provider
        super().__init__(message)

    def to_dict(self) -> dict:
        result: Dict[str, Any] = {
            "kind": self.kind.value,
            "message": self.message,
        }
        if self.status_code is not None:
            result["status_code"] = self.status_code
        if self.network_code is not None:
            result["network_code"] = self.network_code.value
        if self.provider is not None:
            result["provider"] = self.provider
        return result


class ProviderError(GatewayError):
    """Raised by a provider adapter for any upstream failure."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        status_code: Optional[int] = None,
        network_code: Optional[NetworkCode] = None,
        provider: Optional[str] = None,
    ):
        self.kind = kind
        super().__init__(
            message,
            status_code=status_code,
            network_code=network_code,
            provider=provider,
        )

    @classmethod
    def http(cls, status_code: int, message: str, provider: Optional[str] = None) -> "ProviderError":
        return cls(ErrorKind.HTTP, message, status_code=status_code, provider=provider)

    @classmethod
    def network(cls, code: NetworkCode, message: str, provider: Optional[str] = None) -> "ProviderError":
        return cls(ErrorKind.NETWORK, message, network_code=code, provider=provider)

    @classmethod
    def malformed(cls, message: str, provider: Optional[str] = None) -> "ProviderError":
        return cls(ErrorKind.MALFORMED_RESPONSE, message, provider=provider)


class EmptyResponse(ProviderError):
    """Raised when an otherwise successful reply carries no text."""

    def __init__(self, provider: Optional[str] = None, message: str = "No text in provider response"):
        super().__init__(ErrorKind.EMPTY_RESPONSE, message, provider=provider)


class UnconfiguredProvider(GatewayError):
    """Raised when a provider has no credentials configured."""

    kind = ErrorKind.UNCONFIGURED

    def __init__(self, provider: str):
        super().__init__(f"Provider '{provider}' is not configured", provider=provider)


class RateLimitExceeded(GatewayError):
    """Raised when a provider's concurrency ceiling is already reached."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(self, provider: str, active: int, max_concurrent: int):
        self.active = active
        self.max_concurrent = max_concurrent
        super().__init__(
            f"Rate limit exceeded for '{provider}': {active}/{max_concurrent} requests in flight",
            provider=provider,
        )

    def to_dict(self) -> dict:
        result = super().to_dict()
        result["active"] = self.active
        result["max_concurrent"] = self.max_concurrent
        return result


class GenerationFailed(GatewayError):
    """Terminal failure of a generate() call; wraps the classified cause."""

    kind = ErrorKind.GENERATION_FAILED

    def __init__(
        self,
        cause: GatewayError,
        attempts: int = 0,
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ):
        self.cause = cause
        self.attempts = attempts
        self.model = model
        super().__init__(
            f"Generation failed after {attempts} attempt(s): {cause.message}",
            status_code=cause.status_code,
            network_code=cause.network_code,
            provider=provider or cause.provider,
        )

    def to_dict(self) -> dict:
        result = super().to_dict()
        result["attempts"] = self.attempts
        result["model"] = self.model
        result["cause"] = self.cause.to_dict()
        return result
