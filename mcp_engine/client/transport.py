"""Transport contract and the in-process loopback transport."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional, Protocol, Set, Union

from ..errors import ConnectionFailedError, ConnectionLostError, TransportError

logger = logging.getLogger(__name__)


class Endpoint(Protocol):
    """Anything that answers encoded messages: a Dispatcher or a proxy endpoint."""

    async def handle(self, data: Union[bytes, str]) -> Optional[bytes]: ...


class Transport(ABC):
    """Delivers raw envelope bytes in order and reports connection loss."""

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection; raises ConnectionFailedError."""

    @abstractmethod
    async def send(self, data: bytes) -> None:
        """Send one frame; raises ConnectionLostError when not connected."""

    @abstractmethod
    async def receive(self) -> bytes:
        """Next inbound frame; raises ConnectionLostError once the connection drops."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection; pending receives fail."""
        pass

    @property
    @abstractmethod
    def connected(self) -> bool:
        pass


_CLOSED = object()


class LoopbackTransport(Transport):
    """Connects a session to an endpoint living in the same event loop.

    Each sent frame is handled in its own task, so responses arrive in
    completion order rather than send order. Endpoints exposing
    ``attach(sink)`` get their server-initiated notifications routed back
    through this transport.

    ``fail_connects`` makes the next N connect attempts fail and ``drop()``
    simulates the peer going away; both exist for exercising reconnects.
    """

    def __init__(self, endpoint: Endpoint, name: str = "loopback", fail_connects: int = 0):
        self.endpoint = endpoint
        self.name = name
        self.fail_connects = fail_connects
        self.available = True
        self.connect_attempts = 0
        self._inbox: Optional[asyncio.Queue] = None
        self._tasks: Set[asyncio.Task] = set()
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Attach to the endpoint; fails while the endpoint is unavailable."""
        self.connect_attempts += 1
        if self.fail_connects > 0:
            self.fail_connects -= 1
            raise ConnectionFailedError(f"{self.name}: connection refused")
        if not self.available:
            raise ConnectionFailedError(f"{self.name}: endpoint unavailable")

        self._inbox = asyncio.Queue()
        self._connected = True
        attach: Optional[Callable[[Callable[[bytes], Awaitable[None]]], None]] = getattr(
            self.endpoint, "attach", None
        )
        if attach is not None:
            attach(self._deliver)
        logger.debug(f"{self.name}: connected")

    async def send(self, data: bytes) -> None:
        if not self._connected:
            raise ConnectionLostError(f"{self.name}: not connected")
        task = asyncio.create_task(self._forward(data), name=f"{self.name}_forward")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def receive(self) -> bytes:
        if self._inbox is None:
            raise ConnectionLostError(f"{self.name}: not connected")
        item = await self._inbox.get()
        if item is _CLOSED:
            raise ConnectionLostError(f"{self.name}: connection closed")
        return item

    async def close(self) -> None:
        await self._shutdown()
        logger.debug(f"{self.name}: closed")

    async def drop(self) -> None:
        """Simulate the remote side disappearing."""
        self.available = False
        await self._shutdown()
        logger.debug(f"{self.name}: connection dropped")

    def restore(self) -> None:
        """Let the next connect succeed again after a drop."""
        self.available = True

    async def _shutdown(self) -> None:
        if not self._connected:
            return
        self._connected = False
        attach = getattr(self.endpoint, "attach", None)
        if attach is not None:
            attach(None)

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._inbox is not None:
            self._inbox.put_nowait(_CLOSED)

    async def _forward(self, data: bytes) -> None:
        """Hand one frame to the endpoint and queue its response."""
        try:
            response = await self.endpoint.handle(data)
        except TransportError as e:
            logger.warning(f"{self.name}: endpoint rejected frame: {e}")
            return
        if response is not None and self._connected:
            self._inbox.put_nowait(response)

    async def _deliver(self, data: bytes) -> None:
        if self._connected:
            self._inbox.put_nowait(data)
