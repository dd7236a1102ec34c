"""Retention window for finished executions."""

import logging
import time
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)


class RetentionEntry:
    """Tracks when a finished execution becomes reclaimable."""

    def __init__(self, execution_id: str, ttl_seconds: float, now: float):
        self.execution_id = execution_id
        self.created_at = now
        self.expires_at = now + ttl_seconds
        self.retrieved = False

    def is_expired(self, now: float) -> bool:
        return self.retrieved or now >= self.expires_at


class ResultRetention:
    """Holds terminal executions until retrieved or their window elapses."""

    def __init__(
        self,
        ttl: float = 300.0,
        max_size: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.max_size = max_size
        self._clock = clock
        self._entries: Dict[str, RetentionEntry] = {}
        self._operations = 0

    def track(self, execution_id: str) -> None:
        """Start the retention window for a finished execution."""
        self._entries[execution_id] = RetentionEntry(execution_id, self.ttl, self._clock())
        logger.debug(f"Retaining execution {execution_id} for {self.ttl}s")

    def mark_retrieved(self, execution_id: str) -> None:
        """Make a retrieved result reclaimable at the next collection."""
        entry = self._entries.get(execution_id)
        if entry is not None:
            entry.retrieved = True

    def collect(self) -> List[str]:
        """Return ids that are reclaimable now and forget them.

        Entries past ``max_size`` are evicted oldest first, 10% at a time.
        """
        now = self._clock()
        reclaimable = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in reclaimable:
            del self._entries[key]

        if len(self._entries) > self.max_size:
            by_age = sorted(self._entries.values(), key=lambda entry: entry.created_at)
            evict_count = max(len(self._entries) - self.max_size, len(by_age) // 10)
            for entry in by_age[:evict_count]:
                del self._entries[entry.execution_id]
                reclaimable.append(entry.execution_id)
            logger.debug(f"Evicted {evict_count} retained executions")

        if reclaimable:
            logger.debug(f"Reclaimed {len(reclaimable)} finished executions")
        return reclaimable

    def should_collect(self, every: int = 100) -> bool:
        """True once per ``every`` calls, for on-demand cleanup."""
        self._operations += 1
        return self._operations % every == 0

    def __contains__(self, execution_id: str) -> bool:
        return execution_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, float]:
        """Occupancy of the retention window."""
        now = self._clock()
        total = len(self._entries)
        expired = sum(1 for entry in self._entries.values() if entry.is_expired(now))
        return {
            "total_entries": total,
            "expired_entries": expired,
            "active_entries": total - expired,
            "max_size": self.max_size,
            "fill_percentage": (total / self.max_size) * 100 if self.max_size else 0.0,
        }
