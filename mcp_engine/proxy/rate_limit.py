"""Keyed rate limiters used by the proxy before forwarding."""

import logging
import math
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple

from ..config.models import RateLimitConfig

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class RateLimiter(ABC):
    """Rejecting limiter: a request over the limit fails immediately."""

    strategy = "none"

    def __init__(self, clock: Clock = time.monotonic, max_keys: int = 10000):
        self._clock = clock
        self._max_keys = max_keys
        self.allowed = 0
        self.limited = 0

    def try_acquire(self, key: str) -> bool:
        """Take one unit of capacity for ``key``; False when none is left."""
        ok = self._acquire(key, self._clock())
        if ok:
            self.allowed += 1
        else:
            self.limited += 1
            logger.debug(f"Rate limited: {key}")
        return ok

    @abstractmethod
    def _acquire(self, key: str, now: float) -> bool:
        pass

    @abstractmethod
    def retry_after(self, key: str) -> float:
        """Seconds until ``key`` can be served again."""

    @abstractmethod
    def reset(self, key: Optional[str] = None) -> None:
        """Forget the state of one key, or of every key."""
        pass

    def get_stats(self) -> Dict[str, Any]:
        """Strategy name with allowed and limited counts."""
        return {
            "strategy": self.strategy,
            "allowed": self.allowed,
            "limited": self.limited,
        }


class TokenBucketLimiter(RateLimiter):
    """Refills ``max_requests`` tokens per ``window_size`` seconds up to ``burst_size``."""

    strategy = "token_bucket"

    def __init__(
        self,
        max_requests: int,
        burst_size: Optional[int] = None,
        window_size: float = 60.0,
        clock: Clock = time.monotonic,
        max_keys: int = 10000,
    ):
        super().__init__(clock, max_keys)
        if max_requests <= 0 or window_size <= 0:
            raise ValueError("max_requests and window_size must be positive")
        self.capacity = float(burst_size if burst_size is not None else max_requests)
        self.refill_rate = max_requests / window_size  # tokens per second
        self._buckets: Dict[str, Tuple[float, float]] = {}

    def _refill(self, key: str, now: float) -> float:
        """Tokens available to ``key`` at ``now``."""
        tokens, last = self._buckets.get(key, (self.capacity, now))
        elapsed = max(now - last, 0.0)
        return min(self.capacity, tokens + elapsed * self.refill_rate)

    def _acquire(self, key: str, now: float) -> bool:
        if key not in self._buckets and len(self._buckets) >= self._max_keys:
            self._prune(now)

        tokens = self._refill(key, now)
        if tokens < 1.0:
            self._buckets[key] = (tokens, now)
            return False
        self._buckets[key] = (tokens - 1.0, now)
        return True

    def tokens(self, key: str) -> float:
        """Tokens currently available to ``key``."""
        return self._refill(key, self._clock())

    def retry_after(self, key: str) -> float:
        missing = 1.0 - self.tokens(key)
        return max(missing / self.refill_rate, 0.0)

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self._buckets.clear()
        else:
            self._buckets.pop(key, None)

    def _prune(self, now: float) -> None:
        # Full buckets carry no state worth keeping.
        for key in [k for k in self._buckets if self._refill(k, now) >= self.capacity]:
            del self._buckets[key]


class FixedWindowLimiter(RateLimiter):
    """At most ``max_requests`` per aligned window of ``window_size`` seconds."""

    strategy = "fixed_window"

    def __init__(
        self,
        max_requests: int,
        window_size: float = 60.0,
        clock: Clock = time.monotonic,
        max_keys: int = 10000,
    ):
        super().__init__(clock, max_keys)
        if max_requests <= 0 or window_size <= 0:
            raise ValueError("max_requests and window_size must be positive")
        self.max_requests = max_requests
        self.window_size = window_size
        self._windows: Dict[str, Tuple[int, int]] = {}

    def _window(self, now: float) -> int:
        """Index of the window containing ``now``."""
        return math.floor(now / self.window_size)

    def _acquire(self, key: str, now: float) -> bool:
        window = self._window(now)
        if key not in self._windows and len(self._windows) >= self._max_keys:
            self._windows = {k: v for k, v in self._windows.items() if v[0] == window}

        current, count = self._windows.get(key, (window, 0))
        if current != window:
            count = 0
        if count >= self.max_requests:
            self._windows[key] = (window, count)
            return False
        self._windows[key] = (window, count + 1)
        return True

    def retry_after(self, key: str) -> float:
        """Seconds until the current window closes, if ``key`` exhausted it."""
        now = self._clock()
        window = self._window(now)
        current, count = self._windows.get(key, (window, 0))
        if current != window or count < self.max_requests:
            return 0.0
        return (window + 1) * self.window_size - now

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self._windows.clear()
        else:
            self._windows.pop(key, None)


def create_limiter(config: RateLimitConfig, clock: Clock = time.monotonic) -> Optional[RateLimiter]:
    """Build the configured limiter; None when rate limiting is disabled."""
    if not config.enabled:
        return None
    if config.strategy == "fixed_window":
        return FixedWindowLimiter(config.max_requests, config.window_size, clock)
    return TokenBucketLimiter(config.max_requests, config.burst_size, config.window_size, clock)
