"""Tests for ai_gateway.gateway module."""

import asyncio

import httpx
import pytest
from structlog.testing import capture_logs

from ai_gateway.cache import CacheConfig
from ai_gateway.errors import (
    GenerationFailed,
    NetworkCode,
    ProviderError,
    RateLimitExceeded,
    UnconfiguredProvider,
)
from ai_gateway.providers import (
    GeminiProvider,
    MockProvider,
    OpenAIProvider,
    OpenRouterProvider,
    ProviderConfig,
    ProviderId,
)
from ai_gateway.rate_limiter import RateLimitConfig
from ai_gateway.retry import RetryPolicy
from ai_gateway.gateway import (
    TEST_PROMPT,
    CallOptions,
    Gateway,
    GatewayConfig,
    GatewayResponse,
    create_gateway,
)


def fast_config(**kwargs) -> GatewayConfig:
    """Config without pacing delays and with short backoff."""
    kwargs.setdefault(
        "rate_limits",
        {p: RateLimitConfig(min_delay=0, max_concurrent=5) for p in ProviderId},
    )
    kwargs.setdefault("retry", RetryPolicy(base_delay=0.01, jitter=0))
    return GatewayConfig(**kwargs)


def mock_for(provider: ProviderId, **kwargs) -> MockProvider:
    return MockProvider(ProviderConfig(provider=provider, api_key="test-key"), **kwargs)


@pytest.fixture
def gemini():
    return MockProvider(response="Hi there")


@pytest.fixture
def gateway(gemini):
    return Gateway(providers=[gemini], config=fast_config())


class TestCallOptions:
    def test_defaults(self):
        options = CallOptions()
        assert options.provider is None
        assert options.history == ()
        assert options.cache_key is None

    def test_history_detached_from_caller(self):
        history = [{"role": "user", "content": "hi"}]
        options = CallOptions(history=history)
        history.append({"role": "assistant", "content": "hello"})
        history[0]["content"] = "changed"

        assert len(options.history) == 1
        assert options.history[0]["content"] == "hi"


class TestGatewayResponse:
    def test_to_dict(self):
        response = GatewayResponse(
            success=True, text="ok", provider="gemini", model="m", attempts=1, latency_ms=12.345,
        )
        d = response.to_dict()
        assert d["success"] is True
        assert d["latency_ms"] == 12.35
        assert d["error"] is None


class TestGatewayConfig:
    def test_defaults(self):
        config = GatewayConfig()
        assert config.default_provider == ProviderId.GEMINI
        assert config.timeout == 30.0
        assert config.rate_limits[ProviderId.GEMINI].max_concurrent == 1

    def test_from_env(self):
        config = GatewayConfig.from_env({
            "GEMINI_API_KEY": "g-key",
            "OPENROUTER_API_KEY": "or-key",
            "APP_URL": "https://voyage.example",
        })

        assert config.providers[ProviderId.GEMINI].api_key == "g-key"
        assert config.providers[ProviderId.DEEPSEEK].api_key == "or-key"
        assert config.providers[ProviderId.OPENAI].api_key == ""
        assert config.providers[ProviderId.OPENAI].deployment is None
        headers = config.providers[ProviderId.DEEPSEEK].headers
        assert headers["HTTP-Referer"] == "https://voyage.example"
        assert headers["X-Title"] == "VoyageSmart"

    def test_from_env_azure(self):
        config = GatewayConfig.from_env({
            "OPENAI_API_KEY": "az-key",
            "AZURE_OPENAI_ENDPOINT": "https://res.openai.azure.com",
        })
        openai = config.providers[ProviderId.OPENAI]
        assert openai.base_url == "https://res.openai.azure.com"
        assert openai.api_version == "2025-04-01-preview"
        assert openai.deployment == "gpt-5-nano"

    def test_from_env_gateway_settings(self):
        config = GatewayConfig.from_env({
            "AI_GATEWAY_DEFAULT_PROVIDER": "openai",
            "AI_GATEWAY_TIMEOUT": "12.5",
        })
        assert config.default_provider == ProviderId.OPENAI
        assert config.timeout == 12.5
        assert config.providers[ProviderId.GEMINI].timeout == 12.5

    def test_from_env_warns_about_missing_credentials(self):
        with capture_logs() as logs:
            GatewayConfig.from_env({"GEMINI_API_KEY": "g-key"})

        missing = {e["provider"] for e in logs if e["event"] == "provider_credentials_missing"}
        assert missing == {"openai", "deepseek", "gemini-openrouter"}

    def test_to_dict_hides_keys(self):
        d = GatewayConfig.from_env({"GEMINI_API_KEY": "secret"}).to_dict()
        assert d["providers"]["gemini"]["has_api_key"] is True
        assert "secret" not in str(d)


class TestCreateGateway:
    def test_builds_adapters_from_env(self):
        gateway = create_gateway(environ={"GEMINI_API_KEY": "g-key", "OPENROUTER_GEMINI_API_KEY": "og"})

        assert gateway.available_providers() == {ProviderId.GEMINI, ProviderId.GEMINI_OPENROUTER}
        adapters = gateway.registry.providers
        assert isinstance(adapters[ProviderId.GEMINI], GeminiProvider)
        assert isinstance(adapters[ProviderId.OPENAI], OpenAIProvider)
        assert isinstance(adapters[ProviderId.DEEPSEEK], OpenRouterProvider)

    def test_explicit_providers(self, gemini):
        gateway = create_gateway(providers=[gemini], config=fast_config())
        assert gateway.available_providers() == {ProviderId.GEMINI}


class TestGenerate:
    @pytest.mark.asyncio
    async def test_basic(self, gateway, gemini):
        text = await gateway.generate("Hello")

        assert text == "Hi there"
        assert gemini.call_count == 1
        assert gemini.calls[0]["prompt"] == "Hello"

    @pytest.mark.asyncio
    async def test_messages_and_model_config(self, gateway, gemini):
        await gateway.generate(
            "Plan day two",
            CallOptions(
                system_prompt="You are a travel planner",
                history=[{"role": "user", "content": "Rome"}, {"role": "model", "content": "Nice"}],
                model="gemini-1.5-pro",
                temperature=0.2,
            ),
        )

        call = gemini.calls[0]
        assert [m["role"] for m in call["messages"]] == ["system", "user", "assistant", "user"]
        assert call["messages"][-1]["content"] == "Plan day two"
        assert call["model_config"].model == "gemini-1.5-pro"
        assert call["model_config"].temperature == 0.2

    @pytest.mark.asyncio
    async def test_routes_to_requested_provider(self, gemini):
        openai = mock_for(ProviderId.OPENAI, response="from openai")
        gateway = Gateway(providers=[gemini, openai], config=fast_config())

        text = await gateway.generate("Hello", CallOptions(provider=ProviderId.OPENAI))

        assert text == "from openai"
        assert gemini.call_count == 0
        assert openai.calls[0]["model_config"].model == "gpt-5-nano"

    @pytest.mark.asyncio
    async def test_uses_configured_default_provider(self, gemini):
        deepseek = mock_for(ProviderId.DEEPSEEK, response="from deepseek")
        gateway = Gateway(
            providers=[gemini, deepseek],
            config=fast_config(default_provider=ProviderId.DEEPSEEK),
        )

        assert await gateway.generate("Hello") == "from deepseek"

    @pytest.mark.asyncio
    async def test_accepts_string_provider(self, gemini):
        openai = mock_for(ProviderId.OPENAI, response="from openai")
        gateway = Gateway(providers=[gemini, openai], config=fast_config())

        assert await gateway.generate("Hello", CallOptions(provider="openai")) == "from openai"


class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_error_then_success(self):
        provider = MockProvider(outcomes=[ProviderError.http(503, "Service Unavailable"), "Hi there"])
        gateway = Gateway(providers=[provider], config=fast_config())

        options = CallOptions(cache_key="k1", retry={"base_delay": 0.01})

        text = await gateway.generate("Hello", options)

        assert text == "Hi there"
        assert provider.call_count == 2
        assert gateway.upstream_calls == 2

        # Served from the cache with no further adapter calls
        assert await gateway.generate("Hello", options) == "Hi there"
        assert provider.call_count == 2

    @pytest.mark.asyncio
    async def test_fatal_error_single_call(self):
        provider = MockProvider(outcomes=[ProviderError.http(400, "Bad Request"), "never"])
        gateway = Gateway(providers=[provider], config=fast_config())

        with pytest.raises(GenerationFailed) as exc:
            await gateway.generate("Hello")

        assert provider.call_count == 1
        assert exc.value.status_code == 400
        assert exc.value.attempts == 1
        assert exc.value.provider == "gemini"

    @pytest.mark.asyncio
    async def test_exhausted_retries(self):
        provider = MockProvider(outcomes=[ProviderError.http(503, "busy")] * 3)
        gateway = Gateway(providers=[provider], config=fast_config())

        with pytest.raises(GenerationFailed) as exc:
            await gateway.generate("Hello", CallOptions(retry={"max_retries": 2}))

        assert provider.call_count == 3
        assert exc.value.attempts == 3
        assert exc.value.cause.status_code == 503

    @pytest.mark.asyncio
    async def test_empty_response_not_retried(self):
        provider = MockProvider(outcomes=["", "late"])
        gateway = Gateway(providers=[provider], config=fast_config())

        with pytest.raises(GenerationFailed):
            await gateway.generate("Hello")

        assert provider.call_count == 1

    @pytest.mark.asyncio
    async def test_call_timeout(self):
        provider = MockProvider(latency_ms=200)
        gateway = Gateway(providers=[provider], config=fast_config())

        with pytest.raises(GenerationFailed) as exc:
            await gateway.generate("Hello", CallOptions(timeout=0.05, retry={"max_retries": 0}))

        assert exc.value.network_code == NetworkCode.TIMEOUT
        assert gateway.rate_limiter.get_state(ProviderId.GEMINI).active_count == 0

    @pytest.mark.asyncio
    async def test_slot_released_after_failure(self):
        provider = MockProvider(fail=True)
        gateway = Gateway(providers=[provider], config=fast_config())

        with pytest.raises(GenerationFailed):
            await gateway.generate("Hello")

        assert gateway.rate_limiter.get_state(ProviderId.GEMINI).active_count == 0


class TestRateLimiting:
    @pytest.mark.asyncio
    async def test_ceiling_rejects_extra_call(self):
        provider = MockProvider(latency_ms=50)
        config = fast_config(rate_limits={ProviderId.GEMINI: RateLimitConfig(min_delay=0, max_concurrent=1)})
        gateway = Gateway(providers=[provider], config=config)

        results = await asyncio.gather(
            gateway.generate("first"),
            gateway.generate("second"),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, GenerationFailed)]
        assert len(failures) == 1
        assert isinstance(failures[0].cause, RateLimitExceeded)
        assert failures[0].attempts == 1
        assert provider.call_count == 1
        assert gateway.rate_limiter.get_state(ProviderId.GEMINI).active_count == 0

    @pytest.mark.asyncio
    async def test_min_delay_spaces_calls(self):
        provider = MockProvider()
        config = fast_config(rate_limits={ProviderId.GEMINI: RateLimitConfig(min_delay=0.05, max_concurrent=1)})
        gateway = Gateway(providers=[provider], config=config)
        loop = asyncio.get_running_loop()

        start = loop.time()
        await gateway.generate("first")
        await gateway.generate("second")

        assert loop.time() - start >= 0.04


class TestCaching:
    @pytest.mark.asyncio
    async def test_cache_hit_skips_provider(self, gateway, gemini):
        options = CallOptions(cache_key="trip:1:summary")

        first = await gateway.generate("Summarize", options)
        second = await gateway.generate("Summarize", options)

        assert first == second == "Hi there"
        assert gemini.call_count == 1
        assert gateway.cached_requests == 1

    @pytest.mark.asyncio
    async def test_no_cache_key_no_caching(self, gateway, gemini):
        await gateway.generate("Hello")
        await gateway.generate("Hello")
        assert gemini.call_count == 2

    @pytest.mark.asyncio
    async def test_failures_not_cached(self):
        provider = MockProvider(outcomes=[ProviderError.http(400, "bad")], response="ok")
        gateway = Gateway(providers=[provider], config=fast_config())
        options = CallOptions(cache_key="k")

        with pytest.raises(GenerationFailed):
            await gateway.generate("Hello", options)
        assert await gateway.generate("Hello", options) == "ok"
        assert provider.call_count == 2

    @pytest.mark.asyncio
    async def test_cache_ttl(self, gateway, gemini):
        options = CallOptions(cache_key="short", cache_ttl=0.05)

        await gateway.generate("Hello", options)
        await asyncio.sleep(0.1)
        await gateway.generate("Hello", options)

        assert gemini.call_count == 2

    @pytest.mark.asyncio
    async def test_live_entry_served_after_other_keys(self, gateway, gemini):
        for key in ("k1", "k2", "k3", "k1"):
            await gateway.generate("Hello", CallOptions(cache_key=key, cache_ttl=300))

        assert gemini.call_count == 3
        assert gateway.upstream_calls == 3

    @pytest.mark.asyncio
    async def test_disabled_cache(self, gemini):
        gateway = Gateway(providers=[gemini], config=fast_config(cache=CacheConfig(enabled=False)))
        options = CallOptions(cache_key="k")

        await gateway.generate("Hello", options)
        await gateway.generate("Hello", options)

        assert gemini.call_count == 2

    @pytest.mark.asyncio
    async def test_clear_cache_pattern(self, gateway, gemini):
        await gateway.generate("a", CallOptions(cache_key="trip:1:a"))
        await gateway.generate("b", CallOptions(cache_key="trip:1:b"))
        await gateway.generate("c", CallOptions(cache_key="trip:2:c"))

        assert gateway.clear_cache("trip:1:") == 2
        assert gateway.cache.keys() == ["trip:2:c"]


class TestDeduplication:
    @pytest.mark.asyncio
    async def test_concurrent_calls_share_one_upstream_call(self):
        provider = MockProvider(response="shared", latency_ms=50)
        gateway = Gateway(providers=[provider], config=fast_config())
        options = CallOptions(cache_key="itinerary:42")

        results = await asyncio.gather(*(gateway.generate("Plan", options) for _ in range(5)))

        assert results == ["shared"] * 5
        assert provider.call_count == 1
        assert gateway.deduplicated_requests == 4
        assert gateway.in_flight.pending_count == 0

    @pytest.mark.asyncio
    async def test_shared_failure_reaches_every_caller(self):
        provider = MockProvider(outcomes=[ProviderError.http(400, "bad")], latency_ms=20)
        gateway = Gateway(providers=[provider], config=fast_config())
        options = CallOptions(cache_key="k")

        results = await asyncio.gather(
            *(gateway.generate("Plan", options) for _ in range(3)),
            return_exceptions=True,
        )

        assert all(isinstance(r, GenerationFailed) for r in results)
        assert provider.call_count == 1
        assert gateway.in_flight.is_pending("k") is False

    @pytest.mark.asyncio
    async def test_different_keys_not_shared(self):
        provider = MockProvider(latency_ms=20)
        gateway = Gateway(providers=[provider], config=fast_config())

        await asyncio.gather(
            gateway.generate("Plan", CallOptions(cache_key="a")),
            gateway.generate("Plan", CallOptions(cache_key="b")),
        )

        assert provider.call_count == 2


class TestUnconfiguredProvider:
    @pytest.mark.asyncio
    async def test_missing_credentials(self, gemini):
        openai = MockProvider(ProviderConfig(provider=ProviderId.OPENAI, api_key=""))
        gateway = Gateway(providers=[gemini, openai], config=fast_config())

        with pytest.raises(GenerationFailed) as exc:
            await gateway.generate("Hello", CallOptions(provider=ProviderId.OPENAI))

        assert isinstance(exc.value.cause, UnconfiguredProvider)
        assert exc.value.attempts == 0
        assert openai.call_count == 0
        assert gateway.upstream_calls == 0

    @pytest.mark.asyncio
    async def test_unregistered_provider(self, gateway):
        with pytest.raises(GenerationFailed) as exc:
            await gateway.generate("Hello", CallOptions(provider=ProviderId.DEEPSEEK))
        assert exc.value.provider == "deepseek"

    @pytest.mark.asyncio
    async def test_unknown_provider_name(self, gateway):
        with pytest.raises(GenerationFailed) as exc:
            await gateway.generate("Hello", CallOptions(provider="no-such-provider"))
        assert isinstance(exc.value.cause, UnconfiguredProvider)

    def test_available_providers(self, gemini):
        openai = MockProvider(ProviderConfig(provider=ProviderId.OPENAI, api_key=""))
        gateway = Gateway(providers=[gemini, openai], config=fast_config())
        assert gateway.available_providers() == {ProviderId.GEMINI}


class TestGenerateResponse:
    @pytest.mark.asyncio
    async def test_unclassified_transport_failure(self):
        def handler(request):
            raise httpx.DecodingError("corrupt gzip body", request=request)

        provider = GeminiProvider(
            ProviderConfig(provider=ProviderId.GEMINI, api_key="g-key"),
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        gateway = Gateway(providers=[provider], config=fast_config())

        response = await gateway.generate_response("Hello")

        assert response.success is False
        assert response.attempts == 1
        assert "could not be decoded" in response.error
        await gateway.aclose()

    @pytest.mark.asyncio
    async def test_success(self, gateway):
        response = await gateway.generate_response("Hello")

        assert response.success is True
        assert response.text == "Hi there"
        assert response.provider == "gemini"
        assert response.model == "gemini-2.0-flash-exp"
        assert response.attempts == 1
        assert response.cached is False

    @pytest.mark.asyncio
    async def test_cached(self, gateway):
        options = CallOptions(cache_key="k")
        await gateway.generate_response("Hello", options)
        response = await gateway.generate_response("Hello", options)

        assert response.cached is True
        assert response.attempts == 0

    @pytest.mark.asyncio
    async def test_failure(self):
        provider = MockProvider(outcomes=[ProviderError.http(401, "Unauthorized")])
        gateway = Gateway(providers=[provider], config=fast_config())

        response = await gateway.generate_response("Hello")

        assert response.success is False
        assert response.text == ""
        assert response.error == "Unauthorized"
        assert response.provider == "gemini"
        assert response.model == "gemini-2.0-flash-exp"

    @pytest.mark.asyncio
    async def test_unknown_provider(self, gateway):
        response = await gateway.generate_response("Hello", CallOptions(provider="no-such-provider"))
        assert response.success is False
        assert response.provider == "no-such-provider"


class TestProviderCheck:
    @pytest.mark.asyncio
    async def test_healthy(self, gateway, gemini):
        assert await gateway.test_provider(ProviderId.GEMINI) is True
        assert gemini.calls[0]["prompt"] == TEST_PROMPT

    @pytest.mark.asyncio
    async def test_failing_not_retried(self):
        provider = MockProvider(outcomes=[ProviderError.http(503, "busy")])
        gateway = Gateway(providers=[provider], config=fast_config())

        assert await gateway.test_provider(ProviderId.GEMINI) is False
        assert provider.call_count == 1

    @pytest.mark.asyncio
    async def test_unconfigured(self, gateway):
        assert await gateway.test_provider(ProviderId.OPENAI) is False


class TestLogging:
    @pytest.mark.asyncio
    async def test_attempt_and_outcome_events(self):
        provider = MockProvider(outcomes=[ProviderError.http(503, "busy"), "Hi there"])
        gateway = Gateway(providers=[provider], config=fast_config())

        with capture_logs() as logs:
            await gateway.generate("Hello", CallOptions(cache_key="k1"))

        events = [e["event"] for e in logs]
        assert events.index("attempt_failed") < events.index("attempt_succeeded")
        succeeded = next(e for e in logs if e["event"] == "generation_succeeded")
        assert succeeded["provider"] == "gemini"
        assert succeeded["model"] == "gemini-2.0-flash-exp"
        assert succeeded["cache_key"] == "k1"
        assert succeeded["attempts"] == 2
        assert succeeded["response_length"] == len("Hi there")
        assert "duration_ms" in succeeded

    @pytest.mark.asyncio
    async def test_failure_event(self):
        provider = MockProvider(outcomes=[ProviderError.http(400, "Bad Request")])
        gateway = Gateway(providers=[provider], config=fast_config())

        with capture_logs() as logs:
            with pytest.raises(GenerationFailed):
                await gateway.generate("Hello")

        failed = [e for e in logs if e["event"] == "generation_failed"]
        assert len(failed) == 1
        assert failed[0]["log_level"] == "error"
        assert failed[0]["error"] == "Bad Request"
        assert failed[0]["attempts"] == 1

    @pytest.mark.asyncio
    async def test_cache_hit_event(self, gateway):
        options = CallOptions(cache_key="k1")
        await gateway.generate("Hello", options)

        with capture_logs() as logs:
            await gateway.generate("Hello", options)

        assert [e["event"] for e in logs] == ["cache_hit"]


class TestMetrics:
    @pytest.mark.asyncio
    async def test_get_metrics(self, gateway):
        options = CallOptions(cache_key="k")
        await gateway.generate("Hello", options)
        await gateway.generate("Hello", options)
        with pytest.raises(GenerationFailed):
            await gateway.generate("Hello", CallOptions(provider=ProviderId.OPENAI))

        metrics = gateway.get_metrics()

        assert metrics["total_requests"] == 3
        assert metrics["cached_requests"] == 1
        assert metrics["failed_requests"] == 1
        assert metrics["upstream_calls"] == 1
        assert metrics["cache_hit_rate"] == pytest.approx(1 / 3)
        assert metrics["in_flight"] == 0
        assert metrics["cache"]["hits"] == 1
        assert metrics["rate_limits"]["gemini"]["active"] == 0
        assert metrics["providers"]["gemini"]["configured"] is True

    @pytest.mark.asyncio
    async def test_aclose(self, gateway):
        await gateway.aclose()
