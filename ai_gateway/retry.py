"""
Retry policy and orchestration.

Implements exponential backoff with jitter around a single logical call.
"""

import asyncio
import random
import time
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, FrozenSet, Mapping, Optional, Tuple, TypeVar

from .errors import GatewayError, GenerationFailed, NetworkCode
from .log import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

RETRYABLE_NETWORK_CODES = frozenset({NetworkCode.CONNECTION_RESET, NetworkCode.TIMEOUT})


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry policy with exponential backoff and jitter.

    Delays are in seconds. jitter is the upper bound of the random fraction
    added to each delay.
    """
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: float = 0.1
    retryable_status_codes: FrozenSet[int] = field(
        default_factory=lambda: frozenset({408, 429, 502, 503, 504})
    )

    def with_overrides(self, overrides: Optional[Mapping[str, Any]] = None) -> "RetryPolicy":
        """Merge a partial policy over this one."""
        if not overrides:
            return self
        changes = dict(overrides)
        if "retryable_status_codes" in changes:
            changes["retryable_status_codes"] = frozenset(changes["retryable_status_codes"])
        return replace(self, **changes)

    def get_delay(self, attempt: int, jitter: Optional[float] = None) -> float:
        """
        Calculate delay after a failed attempt.

        Args:
            attempt: Attempt number that just failed (1-indexed)
            jitter: Jitter fraction to apply; random in [0, self.jitter] if None

        Returns:
            Delay in seconds, never above max_delay
        """
        if jitter is None:
            jitter = random.uniform(0, self.jitter)
        delay = self.base_delay * (self.backoff_multiplier ** (attempt - 1))
        return min(self.max_delay, delay * (1 + jitter))

    def is_retryable(self, error: GatewayError) -> bool:
        """Retry on listed HTTP statuses and on connection resets or timeouts."""
        if error.status_code is not None and error.status_code in self.retryable_status_codes:
            return True
        return error.network_code in RETRYABLE_NETWORK_CODES

    def to_dict(self) -> dict:
        return {
            "max_retries": self.max_retries,
            "base_delay": self.base_delay,
            "max_delay": self.max_delay,
            "backoff_multiplier": self.backoff_multiplier,
            "jitter": self.jitter,
            "retryable_status_codes": sorted(self.retryable_status_codes),
        }


class RetryOrchestrator:
    """
    Runs an attempt function until success, a fatal error, or exhaustion.

    Attempts are strictly sequential. Anything that must not be held across a
    backoff sleep (like a rate limiter slot) belongs inside the attempt
    function.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    async def run(
        self,
        attempt_fn: Callable[[], Awaitable[T]],
        policy: Optional[RetryPolicy] = None,
        **log_context: Any,
    ) -> Tuple[T, int]:
        """
        Execute attempt_fn with retries.

        Args:
            attempt_fn: Async callable performing one attempt
            policy: Per-call policy, defaults to the orchestrator's
            **log_context: Fields bound onto every attempt event

        Returns:
            Tuple of (result, attempts_made)

        Raises:
            GenerationFailed: On a fatal error or when retries are exhausted
        """
        policy = policy or self.policy
        log = logger.bind(**log_context)
        max_attempts = policy.max_retries + 1

        for attempt in range(1, max_attempts + 1):
            start_time = time.monotonic()
            try:
                result = await attempt_fn()
            except GatewayError as e:
                duration_ms = round((time.monotonic() - start_time) * 1000, 2)
                retryable = policy.is_retryable(e)
                if not retryable or attempt == max_attempts:
                    log.warning(
                        "attempt_failed",
                        attempt=attempt,
                        duration_ms=duration_ms,
                        error=e.message,
                        retryable=retryable,
                    )
                    raise GenerationFailed(
                        e,
                        attempts=attempt,
                        provider=log_context.get("provider"),
                        model=log_context.get("model"),
                    ) from e

                delay = policy.get_delay(attempt)
                log.warning(
                    "attempt_failed",
                    attempt=attempt,
                    duration_ms=duration_ms,
                    error=e.message,
                    retryable=retryable,
                    retry_in_ms=round(delay * 1000, 2),
                )
                await self._sleep(delay)
                continue

            log.debug(
                "attempt_succeeded",
                attempt=attempt,
                duration_ms=round((time.monotonic() - start_time) * 1000, 2),
            )
            return result, attempt

        # max_retries < 0 leaves nothing to run
        raise ValueError("RetryPolicy.max_retries must be >= 0")
