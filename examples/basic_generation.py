#!/usr/bin/env python3
"""
AI Provider Gateway - Basic Generation Example

This example demonstrates provider selection, caching, in-flight
deduplication and rate limit status. Set GEMINI_API_KEY (and optionally
OPENAI_API_KEY / OPENROUTER_API_KEY) before running.
"""

import asyncio

from ai_gateway import (
    CacheKey,
    CallOptions,
    GenerationFailed,
    ProviderId,
    configure_logging,
    create_gateway,
)


async def main():
    configure_logging("info", json_logs=False)

    print("=" * 60)
    print("AI Provider Gateway - Basic Generation Example")
    print("=" * 60)

    gateway = create_gateway()
    print(f"\nConfigured providers: {sorted(p.value for p in gateway.available_providers())}")

    # Example 1: Basic generation on the default provider
    print("\n1. Basic generation...")

    response = await gateway.generate_response(
        "What is the capital of France?",
        CallOptions(system_prompt="Answer in one short sentence."),
    )
    print(f"   Provider: {response.provider} ({response.model})")
    print(f"   Success: {response.success}, attempts: {response.attempts}")
    print(f"   Text: {response.text[:100] or response.error}")

    # Example 2: Specific provider and model overrides
    print("\n2. Specific provider...")

    try:
        text = await gateway.generate(
            "Write a haiku about trains.",
            CallOptions(provider=ProviderId.DEEPSEEK, temperature=0.9, max_tokens=200),
        )
        print(f"   Response: {text}")
    except GenerationFailed as e:
        print(f"   Failed: {e.cause.message}")

    # Example 3: Caching and deduplication share a key
    print("\n3. Caching and deduplication...")

    prompt = "Suggest three things to do in Lisbon."
    options = CallOptions(cache_key=CacheKey.generate(prompt, provider="gemini", prefix="trip:7"))

    results = await asyncio.gather(
        *(gateway.generate_response(prompt, options) for _ in range(3))
    )
    print(f"   Concurrent calls succeeded: {[r.success for r in results]}")

    cached = await gateway.generate_response(prompt, options)
    print(f"   Follow-up cached: {cached.cached}")
    print(f"   Cleared entries: {gateway.clear_cache('trip:7:')}")

    # Example 4: Metrics and rate limit status
    print("\n4. Gateway metrics...")

    metrics = gateway.get_metrics()
    print(f"   Requests: {metrics['total_requests']}, upstream calls: {metrics['upstream_calls']}")
    print(f"   Deduplicated: {metrics['deduplicated_requests']}, cached: {metrics['cached_requests']}")
    for provider, info in metrics["rate_limits"].items():
        print(f"   {provider}: {info['active']}/{info['max_concurrent']} in flight")

    # Example 5: Provider check
    print("\n5. Provider check...")

    for provider in sorted(gateway.available_providers(), key=lambda p: p.value):
        healthy = await gateway.test_provider(provider)
        status = "✓ healthy" if healthy else "✗ unhealthy"
        print(f"   {provider.value}: {status}")

    await gateway.aclose()

    print("\n" + "=" * 60)
    print("Example complete!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
