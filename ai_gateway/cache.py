"""
Response caching for generated text.

In-memory TTL cache keyed by caller-supplied keys, with lazy expiry and an
opportunistic sweep of expired entries on a fraction of writes.
"""

import hashlib
import json
import random
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Sequence


@dataclass
class CacheConfig:
    """Configuration for caching."""
    enabled: bool = True
    ttl_seconds: float = 300.0  # 5 minutes default
    sweep_probability: float = 0.01

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "ttl_seconds": self.ttl_seconds,
            "sweep_probability": self.sweep_probability,
        }


@dataclass(frozen=True)
class CacheEntry:
    """A cached response."""
    key: str
    value: Any
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class CacheStats:
    """Cache statistics."""
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    entries: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "entries": self.entries,
            "hit_rate": round(self.hit_rate, 4),
        }


class CacheKey:
    """Builds stable cache keys from request parameters."""

    @staticmethod
    def generate(
        prompt: str,
        provider: Optional[str] = None,
        system_prompt: Optional[str] = None,
        history: Optional[Sequence[Dict[str, str]]] = None,
        prefix: str = "ai",
        **kwargs,
    ) -> str:
        """
        Generate a cache key from request parameters.

        Args:
            prompt: Prompt text
            provider: Provider id (optional)
            system_prompt: System prompt (optional)
            history: Conversation history (optional)
            prefix: Readable prefix, kept in clear so clear(pattern) can match it
            **kwargs: Additional parameters that affect the output

        Returns:
            Key string of the form "<prefix>:<hash>"
        """
        key_parts: Dict[str, Any] = {"prompt": prompt}

        if provider is not None:
            key_parts["provider"] = str(provider)
        if system_prompt:
            key_parts["system_prompt"] = system_prompt
        if history:
            key_parts["history"] = [dict(m) for m in history]

        for k, v in kwargs.items():
            if v is not None:
                key_parts[k] = v

        key_json = json.dumps(key_parts, sort_keys=True, ensure_ascii=True)
        return f"{prefix}:{hashlib.sha256(key_json.encode()).hexdigest()[:32]}"


class MemoryCache:
    """
    In-memory TTL cache.

    Expired entries are dropped when read, and swept in bulk on a random
    fraction of writes so no background task is needed.
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CacheConfig()
        self._cache: Dict[str, CacheEntry] = {}
        self._stats = CacheStats()
        self._clock = clock
        self._lock = Lock()

    def get(self, key: str) -> Optional[Any]:
        if not self.config.enabled:
            return None

        with self._lock:
            entry = self._cache.get(key)

            if entry is None:
                self._stats.misses += 1
                return None

            if entry.is_expired(self._clock()):
                del self._cache[key]
                self._stats.misses += 1
                self._stats.evictions += 1
                return None

            self._stats.hits += 1
            return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        if not self.config.enabled:
            return

        if ttl is None:
            ttl = self.config.ttl_seconds

        with self._lock:
            now = self._clock()
            if random.random() < self.config.sweep_probability:
                self._sweep(now)

            self._cache[key] = CacheEntry(key=key, value=value, expires_at=now + ttl)
            self._stats.entries = len(self._cache)

    def delete(self, key: str) -> bool:
        with self._lock:
            if key in self._cache:
                del self._cache[key]
                self._stats.entries = len(self._cache)
                return True
            return False

    def clear(self, pattern: Optional[str] = None) -> int:
        """Remove all entries, or those whose key contains pattern."""
        with self._lock:
            if pattern is None:
                removed = len(self._cache)
                self._cache.clear()
                self._stats = CacheStats()
                return removed

            matching = [k for k in self._cache if pattern in k]
            for k in matching:
                del self._cache[k]
            self._stats.entries = len(self._cache)
            return len(matching)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._cache.keys())

    def get_stats(self) -> CacheStats:
        with self._lock:
            self._stats.entries = len(self._cache)
            return CacheStats(
                hits=self._stats.hits,
                misses=self._stats.misses,
                evictions=self._stats.evictions,
                entries=self._stats.entries,
            )

    def cleanup_expired(self) -> int:
        """Remove all expired entries. Returns count removed."""
        with self._lock:
            removed = self._sweep(self._clock())
            self._stats.entries = len(self._cache)
            return removed

    def _sweep(self, now: float) -> int:
        expired = [k for k, v in self._cache.items() if v.is_expired(now)]
        for k in expired:
            del self._cache[k]
            self._stats.evictions += 1
        return len(expired)

