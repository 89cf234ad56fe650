"""
Per-provider rate limiting.

Combines a minimum delay between request starts with a ceiling on the number
of requests in flight. The ceiling fails fast instead of queueing.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from threading import Lock
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional

from .errors import RateLimitExceeded
from .log import get_logger
from .providers import ProviderId

logger = get_logger(__name__)


@dataclass
class RateLimitConfig:
    """Pacing limits for one provider."""
    min_delay: float = 1.0  # seconds between request starts
    max_concurrent: int = 2

    def to_dict(self) -> dict:
        return {
            "min_delay": self.min_delay,
            "max_concurrent": self.max_concurrent,
        }


# Stricter quotas get a larger delay and lower concurrency
DEFAULT_RATE_LIMITS: Dict[ProviderId, RateLimitConfig] = {
    ProviderId.GEMINI: RateLimitConfig(min_delay=2.0, max_concurrent=1),
    ProviderId.OPENAI: RateLimitConfig(min_delay=0.5, max_concurrent=3),
    ProviderId.DEEPSEEK: RateLimitConfig(min_delay=1.0, max_concurrent=2),
    ProviderId.GEMINI_OPENROUTER: RateLimitConfig(min_delay=0.5, max_concurrent=3),
}


@dataclass
class RateLimiterState:
    """Mutable per-provider counters."""
    last_request_started_at: Optional[float] = None
    active_count: int = 0


class RateLimiter:
    """
    Per-provider acquire/release gate.

    Every successful acquire() must be paired with exactly one release();
    slot() does the pairing.
    """

    def __init__(
        self,
        configs: Optional[Dict[ProviderId, RateLimitConfig]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.configs: Dict[ProviderId, RateLimitConfig] = dict(DEFAULT_RATE_LIMITS)
        if configs:
            self.configs.update(configs)
        self._clock = clock
        self._sleep = sleep
        self._states: Dict[ProviderId, RateLimiterState] = {}
        self._lock = Lock()

    def get_config(self, provider: ProviderId) -> RateLimitConfig:
        return self.configs.get(ProviderId(provider), RateLimitConfig())

    async def acquire(self, provider: ProviderId) -> None:
        """
        Take a slot for provider, waiting out the minimum delay.

        Raises:
            RateLimitExceeded: If the concurrency ceiling is already reached
        """
        provider = ProviderId(provider)
        config = self.get_config(provider)

        with self._lock:
            state = self._states.setdefault(provider, RateLimiterState())
            if state.active_count >= config.max_concurrent:
                logger.warning(
                    "rate_limit_rejected",
                    provider=provider.value,
                    active=state.active_count,
                    max_concurrent=config.max_concurrent,
                )
                raise RateLimitExceeded(provider.value, state.active_count, config.max_concurrent)

            # Reserve the start time and the slot before suspending so that
            # concurrent acquirers see them.
            now = self._clock()
            previous_start = state.last_request_started_at
            start_at = now
            if state.last_request_started_at is not None:
                start_at = max(now, state.last_request_started_at + config.min_delay)
            state.last_request_started_at = start_at
            state.active_count += 1

        wait = start_at - now
        if wait > 0:
            logger.debug("rate_limit_wait", provider=provider.value, wait_ms=round(wait * 1000, 2))
            try:
                await self._sleep(wait)
            except BaseException:
                with self._lock:
                    # The reserved start never happened
                    if state.last_request_started_at == start_at:
                        state.last_request_started_at = previous_start
                self.release(provider)
                raise

    def release(self, provider: ProviderId) -> None:
        """Return a slot, floored at zero."""
        provider = ProviderId(provider)
        with self._lock:
            state = self._states.setdefault(provider, RateLimiterState())
            state.active_count = max(0, state.active_count - 1)

    @asynccontextmanager
    async def slot(self, provider: ProviderId) -> AsyncIterator[None]:
        """Hold a slot for the duration of the block."""
        await self.acquire(provider)
        try:
            yield
        finally:
            self.release(provider)

    def get_state(self, provider: ProviderId) -> RateLimiterState:
        """Snapshot of a provider's counters."""
        with self._lock:
            state = self._states.get(ProviderId(provider), RateLimiterState())
            return RateLimiterState(
                last_request_started_at=state.last_request_started_at,
                active_count=state.active_count,
            )

    def get_stats(self) -> dict:
        with self._lock:
            return {
                provider.value: {
                    "active": self._states.get(provider, RateLimiterState()).active_count,
                    **config.to_dict(),
                }
                for provider, config in self.configs.items()
            }

    def reset(self) -> None:
        """Reset all counters."""
        with self._lock:
            self._states.clear()
