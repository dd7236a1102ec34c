"""Configuration system for the engine."""

from .manager import ConfigManager
from .models import (
    AuthConfig,
    ClientRule,
    EngineConfig,
    ProxyConfig,
    RateLimitConfig,
    RuntimeConfig,
    SessionConfig,
)

__all__ = [
    "EngineConfig",
    "RuntimeConfig",
    "SessionConfig",
    "ProxyConfig",
    "RateLimitConfig",
    "AuthConfig",
    "ClientRule",
    "ConfigManager",
]
