"""Connection statistics for a client session."""

import time
from collections import Counter, deque
from typing import Any, Callable, Deque, Dict, Optional


class ConnectionStats:
    def __init__(self, rtt_window: int = 20, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._rtts: Deque[float] = deque(maxlen=rtt_window)
        self.sent = 0
        self.received = 0
        self.errors = 0
        self.reconnect_attempts = 0
        self.errors_by_kind: Counter = Counter()
        self.connected_at: Optional[float] = None

    def record_sent(self, count: int = 1) -> None:
        self.sent += count

    def record_received(self, count: int = 1) -> None:
        self.received += count

    def record_error(self, kind: str) -> None:
        """Count one error under its wire kind."""
        self.errors += 1
        self.errors_by_kind[kind] += 1

    def record_rtt(self, seconds: float) -> None:
        self._rtts.append(max(seconds, 0.0))

    def mark_connected(self) -> None:
        self.connected_at = self._clock()

    def mark_disconnected(self) -> None:
        self.connected_at = None

    @property
    def average_rtt(self) -> Optional[float]:
        """Rolling average over the last ``rtt_window`` pings."""
        if not self._rtts:
            return None
        return sum(self._rtts) / len(self._rtts)

    @property
    def uptime(self) -> float:
        """Seconds since the current connection was established."""
        if self.connected_at is None:
            return 0.0
        return self._clock() - self.connected_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sent": self.sent,
            "received": self.received,
            "errors": self.errors,
            "errors_by_kind": dict(self.errors_by_kind),
            "average_rtt": self.average_rtt,
            "uptime": self.uptime,
            "reconnect_attempts": self.reconnect_attempts,
        }
