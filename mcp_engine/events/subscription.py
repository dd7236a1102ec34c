"""Per-entity, level-triggered event queues."""

import asyncio
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)

_sequence = itertools.count(1)


@dataclass
class Event:
    """One queued notification token."""

    kind: str
    entity_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    seq: int = field(default_factory=lambda: next(_sequence))
    timestamp: float = field(default_factory=time.time)


class Subscription:
    """Event queue owned by a single entity.

    The readiness flag is level-triggered: it stays set while at least one
    event is queued and clears when the consumer drains the queue. Events
    for the same subscription are delivered in publish order.
    """

    def __init__(self, entity_id: str, max_events: Optional[int] = None):
        self.entity_id = entity_id
        self._events: Deque[Event] = deque(maxlen=max_events)
        self._ready = asyncio.Event()
        self._closed = False
        self.published = 0
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def ready(self) -> bool:
        return not self._closed and bool(self._events)

    def publish(self, kind: str, data: Optional[Dict[str, Any]] = None) -> Event:
        """Queue an event and raise the readiness flag."""
        event = Event(kind=kind, entity_id=self.entity_id, data=dict(data or {}))
        if self._closed:
            logger.debug(f"Dropping {kind} event for closed subscription {self.entity_id}")
            self.dropped += 1
            return event

        if self._events.maxlen is not None and len(self._events) == self._events.maxlen:
            self.dropped += 1
        self._events.append(event)
        self.published += 1
        self._ready.set()
        return event

    def drain(self) -> List[Event]:
        """Return every queued event and reset readiness."""
        events = list(self._events)
        self._events.clear()
        self._ready.clear()
        return events

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Suspend until ready; False on timeout or once closed."""
        if self._closed:
            return False
        if self._events:
            return True
        try:
            if timeout is None:
                await self._ready.wait()
            else:
                await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return self.ready

    def close(self) -> None:
        """Make the subscription permanently not-ready.

        Events queued before closing remain drainable once so the consumer
        can observe the final notification.
        """
        if self._closed:
            return
        self._closed = True
        # Wake any waiter so it observes the closed state.
        self._ready.set()

    def handle(self) -> "ReadinessHandle":
        """New readiness handle over this subscription."""
        return ReadinessHandle(self)

    def __len__(self) -> int:
        return len(self._events)


class ReadinessHandle:
    """Consumer view of a subscription; reusable across poll cycles."""

    def __init__(self, subscription: Subscription):
        self._subscription = subscription

    @property
    def entity_id(self) -> str:
        return self._subscription.entity_id

    def is_ready(self) -> bool:
        """True while undrained events are queued and the subscription is open."""
        return self._subscription.ready

    @property
    def closed(self) -> bool:
        return self._subscription.closed

    def drain(self) -> List[Event]:
        return self._subscription.drain()

    async def wait(self, timeout: Optional[float] = None) -> bool:
        return await self._subscription.wait(timeout)

    def __repr__(self) -> str:
        state = "closed" if self.closed else ("ready" if self.is_ready() else "idle")
        return f"<ReadinessHandle {self.entity_id} {state}>"
