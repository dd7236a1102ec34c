"""Backend selection strategies."""

import itertools
from abc import ABC, abstractmethod
from typing import Optional, Sequence

from .backend import Backend


class BackendSelector(ABC):
    name = "base"

    @abstractmethod
    def select(self, backends: Sequence[Backend]) -> Optional[Backend]:
        """Pick a healthy backend, or None when there is none."""

    @staticmethod
    def healthy(backends: Sequence[Backend]) -> Sequence[Backend]:
        return [b for b in backends if b.is_healthy]


class RoundRobinSelector(BackendSelector):
    """Cycles through healthy backends in configuration order."""

    name = "round_robin"

    def __init__(self):
        self._counter = itertools.count()

    def select(self, backends: Sequence[Backend]) -> Optional[Backend]:
        candidates = self.healthy(backends)
        if not candidates:
            return None
        return candidates[next(self._counter) % len(candidates)]


class LeastLoadedSelector(BackendSelector):
    """Fewest in-flight requests wins; ties go to the faster backend."""

    name = "least_loaded"

    def select(self, backends: Sequence[Backend]) -> Optional[Backend]:
        candidates = self.healthy(backends)
        if not candidates:
            return None
        return min(candidates, key=lambda b: (b.load, b.average_response_time))


def create_selector(strategy: str) -> BackendSelector:
    """Build the selector named by the ``selection`` setting."""
    if strategy == "least_loaded":
        return LeastLoadedSelector()
    if strategy == "round_robin":
        return RoundRobinSelector()
    raise ValueError(f"Unknown selection strategy: {strategy}")
