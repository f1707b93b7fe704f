"""Token-bucket rate limiter for external calls.

Keeps the RPC provider, the player feed and the signature service from
throttling us when the full sweep and the gofers run at once.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from threading import Lock


@dataclass
class BucketConfig:
    """Configuration for a single rate-limit bucket."""
    tokens_per_second: float
    max_burst: int
    name: str = ""


DEFAULT_LIMITS: dict[str, BucketConfig] = {
    "rpc": BucketConfig(tokens_per_second=20.0, max_burst=40, name="Chain RPC"),
    "player_feed": BucketConfig(tokens_per_second=5.0, max_burst=5, name="Player feed"),
    "player_stats": BucketConfig(tokens_per_second=5.0, max_burst=10, name="Player stats"),
    "signature_api": BucketConfig(tokens_per_second=2.0, max_burst=4, name="Buy signature"),
}


class TokenBucket:
    """Token bucket; ``acquire`` suspends until a token is available."""

    def __init__(self, config: BucketConfig):
        self._config = config
        self._tokens = float(config.max_burst)
        self._last_refill = time.monotonic()
        self._lock = Lock()
        self._total_requests = 0
        self._total_waits = 0

    def _take(self) -> float:
        """Take a token if one is available; otherwise return the wait."""
        with self._lock:
            now = time.monotonic()
            self._tokens = min(
                float(self._config.max_burst),
                self._tokens + (now - self._last_refill) * self._config.tokens_per_second,
            )
            self._last_refill = now
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                self._total_requests += 1
                return 0.0
            return (1.0 - self._tokens) / self._config.tokens_per_second

    def try_acquire(self) -> bool:
        return self._take() == 0.0

    async def acquire(self) -> None:
        while True:
            wait = self._take()
            if wait == 0.0:
                return
            self._total_waits += 1
            await asyncio.sleep(wait)

    @property
    def stats(self) -> dict[str, int]:
        return {
            "total_requests": self._total_requests,
            "total_waits": self._total_waits,
        }


class RateLimiterRegistry:
    """Registry of per-endpoint rate limiters."""

    def __init__(self) -> None:
        self._buckets: dict[str, TokenBucket] = {}
        self._lock = Lock()

    def get(self, endpoint: str) -> TokenBucket:
        with self._lock:
            if endpoint not in self._buckets:
                config = DEFAULT_LIMITS.get(
                    endpoint,
                    BucketConfig(tokens_per_second=5.0, max_burst=10, name=endpoint),
                )
                self._buckets[endpoint] = TokenBucket(config)
            return self._buckets[endpoint]

    def stats(self) -> dict[str, dict[str, int]]:
        with self._lock:
            return {name: bucket.stats for name, bucket in self._buckets.items()}


# Global singleton
rate_limiter = RateLimiterRegistry()
