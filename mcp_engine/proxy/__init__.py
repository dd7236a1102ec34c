"""Request-forwarding proxy with rate limiting and backend selection."""

from .aggregator import StatsAggregator
from .backend import Backend, HealthStatus
from .balancer import BackendSelector, LeastLoadedSelector, RoundRobinSelector, create_selector
from .rate_limit import FixedWindowLimiter, RateLimiter, TokenBucketLimiter, create_limiter
from .router import ProxyEndpoint, ProxyRouter, ProxyStats

__all__ = [
    "ProxyRouter",
    "ProxyEndpoint",
    "ProxyStats",
    "Backend",
    "HealthStatus",
    "BackendSelector",
    "RoundRobinSelector",
    "LeastLoadedSelector",
    "create_selector",
    "RateLimiter",
    "TokenBucketLimiter",
    "FixedWindowLimiter",
    "create_limiter",
    "StatsAggregator",
]
