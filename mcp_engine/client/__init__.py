"""Client side of the engine: sessions and transports."""

from .session import BatchCall, ClientSession, SessionState
from .stats import ConnectionStats
from .transport import Endpoint, LoopbackTransport, Transport

__all__ = [
    "ClientSession",
    "SessionState",
    "BatchCall",
    "ConnectionStats",
    "Transport",
    "LoopbackTransport",
    "Endpoint",
]
