"""
Rate Limiter
------------
Token bucket rate limiting for tool invocations, one bucket per tool.
"""

from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Optional
import time


@dataclass
class RateLimitConfig:
    """Rate limit configuration."""
    requests_per_minute: int = 60
    burst_size: int = 10  # Allow burst of requests


class RateLimiter:
    """
    Token bucket rate limiter.

    Non-blocking: callers ask try_acquire() and are refused when empty.
    The clock is injectable so tests can advance time.
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._tokens = float(self.config.burst_size)
        self._last_update = clock()
        self._lock = Lock()
        self._rate = self.config.requests_per_minute / 60.0  # tokens per second

    def try_acquire(self) -> bool:
        """Take a token if one is available."""
        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            return False

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_update)
        self._last_update = now
        self._tokens = min(
            float(self.config.burst_size),
            self._tokens + elapsed * self._rate
        )

    @property
    def available_tokens(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens

    def reset(self) -> None:
        with self._lock:
            self._tokens = float(self.config.burst_size)
            self._last_update = self._clock()


class KeyedRateLimiter:
    """Lazily creates one RateLimiter per key (tool name)."""

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._limiters: Dict[str, RateLimiter] = {}
        self._lock = Lock()

    def try_acquire(self, key: str) -> bool:
        with self._lock:
            limiter = self._limiters.get(key)
            if limiter is None:
                limiter = RateLimiter(self.config, clock=self._clock)
                self._limiters[key] = limiter
        return limiter.try_acquire()

    def forget(self, key: str) -> None:
        """Drop a key's bucket, e.g. after its tool is deleted."""
        with self._lock:
            self._limiters.pop(key, None)
