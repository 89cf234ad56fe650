"""
Main gateway implementation.

Combines the provider registry, rate limiting, retries, caching and in-flight
deduplication behind a single generate() call.
"""

import asyncio
import functools
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from .cache import CacheConfig, MemoryCache
from .dedup import InFlightDeduplicator
from .errors import (
    GenerationFailed,
    NetworkCode,
    ProviderError,
    UnconfiguredProvider,
)
from .log import get_logger
from .providers import (
    Message,
    ModelConfig,
    Provider,
    ProviderConfig,
    ProviderId,
    create_provider,
)
from .rate_limiter import DEFAULT_RATE_LIMITS, RateLimitConfig, RateLimiter
from .registry import ProviderRegistry
from .retry import RetryOrchestrator, RetryPolicy

logger = get_logger(__name__)

TEST_PROMPT = 'Test message. Please respond with "OK".'


@dataclass(frozen=True)
class CallOptions:
    """Per-call options. Durations are in seconds."""
    provider: Optional[ProviderId] = None
    system_prompt: Optional[str] = None
    history: Sequence[Message] = ()
    timeout: Optional[float] = None
    retry: Optional[Mapping[str, Any]] = None
    cache_key: Optional[str] = None
    cache_ttl: Optional[float] = None
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None

    def __post_init__(self):
        # Detach from the caller's list
        object.__setattr__(self, "history", tuple(dict(m) for m in self.history))


@dataclass
class GatewayResponse:
    """Structured outcome of a generation."""
    success: bool
    text: str
    provider: str
    model: str
    error: Optional[str] = None
    cached: bool = False
    attempts: int = 0
    latency_ms: float = 0.0

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "text": self.text,
            "provider": self.provider,
            "model": self.model,
            "error": self.error,
            "cached": self.cached,
            "attempts": self.attempts,
            "latency_ms": round(self.latency_ms, 2),
        }


@dataclass
class GatewayConfig:
    """Gateway configuration."""
    default_provider: ProviderId = ProviderId.GEMINI
    timeout: float = 30.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    cache: CacheConfig = field(default_factory=CacheConfig)
    rate_limits: Dict[ProviderId, RateLimitConfig] = field(
        default_factory=lambda: dict(DEFAULT_RATE_LIMITS)
    )
    providers: Dict[ProviderId, ProviderConfig] = field(default_factory=dict)
    model_configs: Dict[ProviderId, ModelConfig] = field(default_factory=dict)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "GatewayConfig":
        """Read provider credentials and defaults from the environment."""
        env = os.environ if environ is None else environ
        timeout = float(env.get("AI_GATEWAY_TIMEOUT", "30"))
        attribution = {
            "HTTP-Referer": env.get("APP_URL", "http://localhost:3000"),
            "X-Title": env.get("APP_TITLE", "VoyageSmart"),
        }
        azure_endpoint = env.get("AZURE_OPENAI_ENDPOINT") or None

        providers = {
            ProviderId.GEMINI: ProviderConfig(
                provider=ProviderId.GEMINI,
                api_key=env.get("GEMINI_API_KEY", ""),
                timeout=timeout,
            ),
            ProviderId.OPENAI: ProviderConfig(
                provider=ProviderId.OPENAI,
                api_key=env.get("OPENAI_API_KEY", ""),
                base_url=azure_endpoint,
                timeout=timeout,
                api_version=(
                    env.get("AZURE_OPENAI_API_VERSION", "2025-04-01-preview")
                    if azure_endpoint else None
                ),
                deployment=(
                    env.get("AZURE_OPENAI_DEPLOYMENT_NAME", "gpt-5-nano")
                    if azure_endpoint else None
                ),
            ),
            ProviderId.DEEPSEEK: ProviderConfig(
                provider=ProviderId.DEEPSEEK,
                api_key=env.get("OPENROUTER_API_KEY", ""),
                timeout=timeout,
                headers=dict(attribution),
            ),
            ProviderId.GEMINI_OPENROUTER: ProviderConfig(
                provider=ProviderId.GEMINI_OPENROUTER,
                api_key=env.get("OPENROUTER_GEMINI_API_KEY", ""),
                timeout=timeout,
                headers=dict(attribution),
            ),
        }
        for provider_config in providers.values():
            if not provider_config.api_key:
                logger.warning("provider_credentials_missing", provider=provider_config.provider.value)

        return cls(
            default_provider=ProviderId(env.get("AI_GATEWAY_DEFAULT_PROVIDER", ProviderId.GEMINI.value)),
            timeout=timeout,
            providers=providers,
        )

    def to_dict(self) -> dict:
        return {
            "default_provider": self.default_provider.value,
            "timeout": self.timeout,
            "retry": self.retry.to_dict(),
            "cache": self.cache.to_dict(),
            "rate_limits": {p.value: c.to_dict() for p, c in self.rate_limits.items()},
            "providers": {p.value: c.to_dict() for p, c in self.providers.items()},
        }


class Gateway:
    """
    AI provider gateway.

    Serves generate() calls with:
    - Response caching by explicit cache key
    - Deduplication of concurrent calls sharing a cache key
    - Per-provider pacing and concurrency limits
    - Retries with exponential backoff on transient failures

    All shared state lives on the instance, so gateways with different
    limits can coexist in one process.
    """

    def __init__(
        self,
        providers: Optional[List[Provider]] = None,
        config: Optional[GatewayConfig] = None,
    ):
        self.config = config or GatewayConfig()
        if providers is None:
            providers = [create_provider(c) for c in self.config.providers.values()]
        self.registry = ProviderRegistry(providers, self.config.model_configs)
        self.rate_limiter = RateLimiter(self.config.rate_limits)
        self.retry = RetryOrchestrator(self.config.retry)
        self.cache = MemoryCache(self.config.cache)
        self.in_flight = InFlightDeduplicator()

        # Metrics
        self.total_requests = 0
        self.cached_requests = 0
        self.deduplicated_requests = 0
        self.failed_requests = 0
        self.upstream_calls = 0

    def available_providers(self) -> Set[ProviderId]:
        return self.registry.available_providers()

    async def generate(self, prompt: str, options: Optional[CallOptions] = None) -> str:
        """
        Generate text for a finished prompt.

        Args:
            prompt: Prompt text, sent as the final user turn
            options: Per-call options

        Returns:
            Generated text

        Raises:
            GenerationFailed: On a fatal error or after retries are exhausted
        """
        text, _ = await self._run(prompt, options or CallOptions())
        return text

    async def generate_response(
        self,
        prompt: str,
        options: Optional[CallOptions] = None,
    ) -> GatewayResponse:
        """Like generate(), but reports failure in the returned value."""
        options = options or CallOptions()
        start_time = time.monotonic()
        requested = options.provider or self.config.default_provider
        provider = getattr(requested, "value", requested)

        try:
            text, attempts = await self._run(prompt, options)
        except GenerationFailed as e:
            return GatewayResponse(
                success=False,
                text="",
                provider=e.provider or provider,
                model=e.model or "",
                error=e.cause.message,
                attempts=e.attempts,
                latency_ms=(time.monotonic() - start_time) * 1000,
            )

        return GatewayResponse(
            success=True,
            text=text,
            provider=provider,
            model=options.model or self.registry.default_model(provider),
            cached=attempts == 0,
            attempts=attempts,
            latency_ms=(time.monotonic() - start_time) * 1000,
        )

    async def test_provider(self, provider: ProviderId) -> bool:
        """Check that a provider answers a trivial prompt."""
        try:
            await self.generate(
                TEST_PROMPT,
                CallOptions(provider=provider, timeout=10.0, retry={"max_retries": 0}),
            )
        except GenerationFailed as e:
            logger.warning("provider_test_failed", provider=e.provider, error=e.cause.message)
            return False
        return True

    async def _run(self, prompt: str, options: CallOptions) -> Tuple[str, int]:
        """Returns (text, attempts); attempts is 0 for a cache hit."""
        self.total_requests += 1
        cache_key = options.cache_key

        if cache_key:
            cached = self.cache.get(cache_key)
            if cached is not None:
                self.cached_requests += 1
                logger.debug("cache_hit", cache_key=cache_key)
                return cached, 0

        try:
            provider = self._resolve_provider(options)
            adapter = self.registry.get_provider(provider)
            model_config = self.registry.resolve_config(
                provider,
                model=options.model,
                temperature=options.temperature,
                max_tokens=options.max_tokens,
            )
        except UnconfiguredProvider as e:
            self.failed_requests += 1
            logger.error("generation_failed", provider=e.provider, cache_key=cache_key, error=e.message)
            raise GenerationFailed(e, attempts=0, provider=e.provider) from e

        execute = functools.partial(self._execute, adapter, model_config, prompt, options)
        try:
            if cache_key:
                if self.in_flight.is_pending(cache_key):
                    self.deduplicated_requests += 1
                return await self.in_flight.join_or_start(cache_key, execute)
            return await execute()
        except GenerationFailed:
            self.failed_requests += 1
            raise

    def _resolve_provider(self, options: CallOptions) -> ProviderId:
        requested = options.provider or self.config.default_provider
        try:
            return ProviderId(requested)
        except ValueError:
            raise UnconfiguredProvider(str(requested)) from None

    async def _execute(
        self,
        adapter: Provider,
        model_config: ModelConfig,
        prompt: str,
        options: CallOptions,
    ) -> Tuple[str, int]:
        """One logical upstream call: retries around rate-limited attempts."""
        provider = adapter.provider_id
        timeout = options.timeout if options.timeout is not None else self.config.timeout
        policy = self.config.retry.with_overrides(options.retry)
        log_context = {
            "provider": provider.value,
            "model": model_config.model,
            "cache_key": options.cache_key,
        }
        start_time = time.monotonic()

        async def attempt() -> str:
            async with self.rate_limiter.slot(provider):
                self.upstream_calls += 1
                try:
                    return await asyncio.wait_for(
                        adapter.send(prompt, options.history, options.system_prompt, model_config),
                        timeout=timeout,
                    )
                except asyncio.TimeoutError as e:
                    raise ProviderError.network(
                        NetworkCode.TIMEOUT,
                        f"{provider.value} call exceeded {timeout}s",
                        provider=provider.value,
                    ) from e

        try:
            text, attempts = await self.retry.run(attempt, policy=policy, **log_context)
        except GenerationFailed as e:
            logger.error(
                "generation_failed",
                attempts=e.attempts,
                duration_ms=round((time.monotonic() - start_time) * 1000, 2),
                error=e.cause.message,
                **log_context,
            )
            raise

        if options.cache_key:
            self.cache.set(options.cache_key, text, options.cache_ttl)

        logger.info(
            "generation_succeeded",
            attempts=attempts,
            duration_ms=round((time.monotonic() - start_time) * 1000, 2),
            response_length=len(text),
            **log_context,
        )
        return text, attempts

    def clear_cache(self, pattern: Optional[str] = None) -> int:
        """Drop cached responses, optionally only keys containing pattern."""
        return self.cache.clear(pattern)

    def get_metrics(self) -> dict:
        """Get gateway metrics."""
        return {
            "total_requests": self.total_requests,
            "cached_requests": self.cached_requests,
            "deduplicated_requests": self.deduplicated_requests,
            "failed_requests": self.failed_requests,
            "upstream_calls": self.upstream_calls,
            "cache_hit_rate": self.cached_requests / max(1, self.total_requests),
            "in_flight": self.in_flight.pending_count,
            "cache": self.cache.get_stats().to_dict(),
            "rate_limits": self.rate_limiter.get_stats(),
            "providers": self.registry.to_dict(),
        }

    async def aclose(self) -> None:
        for provider in self.registry.providers.values():
            await provider.aclose()


def create_gateway(
    providers: Optional[List[Provider]] = None,
    config: Optional[GatewayConfig] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Gateway:
    """
    Create a gateway, reading configuration from the environment by default.

    Args:
        providers: Adapters to use instead of ones built from config
        config: Gateway configuration
        environ: Environment mapping used when config is not given

    Returns:
        Configured Gateway instance
    """
    return Gateway(
        providers=providers,
        config=config or GatewayConfig.from_env(environ),
    )
