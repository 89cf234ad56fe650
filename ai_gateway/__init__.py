"""
AI Provider Gateway - one reliable generate() call over several LLM backends.

Routes a finished prompt to Gemini, OpenAI (or Azure OpenAI) and OpenRouter
backends with per-provider rate limiting, retries with exponential backoff,
in-flight deduplication and response caching.
"""

from .errors import (
    ErrorKind,
    NetworkCode,
    GatewayError,
    ProviderError,
    EmptyResponse,
    UnconfiguredProvider,
    RateLimitExceeded,
    GenerationFailed,
)
from .providers import (
    ProviderId,
    ModelConfig,
    ProviderConfig,
    Provider,
    GeminiProvider,
    OpenAIProvider,
    OpenRouterProvider,
    MockProvider,
    DEFAULT_MODEL_CONFIGS,
    create_provider,
)
from .registry import ProviderRegistry
from .rate_limiter import (
    RateLimiter,
    RateLimitConfig,
    RateLimiterState,
    DEFAULT_RATE_LIMITS,
)
from .retry import (
    RetryPolicy,
    RetryOrchestrator,
)
from .cache import (
    CacheConfig,
    CacheEntry,
    MemoryCache,
    CacheKey,
)
from .dedup import InFlightDeduplicator
from .gateway import (
    Gateway,
    GatewayConfig,
    CallOptions,
    GatewayResponse,
    create_gateway,
)
from .log import configure_logging

__version__ = "0.1.0"

__all__ = [
    # Errors
    "ErrorKind",
    "NetworkCode",
    "GatewayError",
    "ProviderError",
    "EmptyResponse",
    "UnconfiguredProvider",
    "RateLimitExceeded",
    "GenerationFailed",
    # Providers
    "ProviderId",
    "ModelConfig",
    "ProviderConfig",
    "Provider",
    "GeminiProvider",
    "OpenAIProvider",
    "OpenRouterProvider",
    "MockProvider",
    "DEFAULT_MODEL_CONFIGS",
    "create_provider",
    "ProviderRegistry",
    # Rate limiting
    "RateLimiter",
    "RateLimitConfig",
    "RateLimiterState",
    "DEFAULT_RATE_LIMITS",
    # Retries
    "RetryPolicy",
    "RetryOrchestrator",
    # Caching
    "CacheConfig",
    "CacheEntry",
    "MemoryCache",
    "CacheKey",
    "InFlightDeduplicator",
    # Gateway
    "Gateway",
    "GatewayConfig",
    "CallOptions",
    "GatewayResponse",
    "create_gateway",
    "configure_logging",
]
