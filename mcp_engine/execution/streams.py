"""Independent byte channels used by streaming executions."""

import asyncio
import logging
from typing import Callable, Iterable, Optional, Union

logger = logging.getLogger(__name__)

ChunkTransform = Callable[[bytes], Union[bytes, Iterable[bytes], None]]


class ChannelClosedError(Exception):
    """Write attempted after the channel signalled end-of-data."""


class ByteChannel:
    """Ordered chunk queue with its own end-of-data signal.

    An optional ``transform`` is applied synchronously to every written
    chunk. It may return one chunk, an iterable of chunks (a splitter) or
    ``None`` to drop the chunk.
    """

    def __init__(
        self,
        name: str,
        transform: Optional[ChunkTransform] = None,
        max_chunks: int = 0,
    ):
        self.name = name
        self.transform = transform
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_chunks)
        self._closed = False
        self._eof_seen = False
        self.bytes_written = 0
        self.bytes_read = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def at_eof(self) -> bool:
        return self._eof_seen

    async def write(self, chunk: bytes) -> None:
        """Queue a chunk, suspending while the buffer is full."""
        if self._closed:
            raise ChannelClosedError(f"Channel {self.name} is closed")
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")

        for piece in self._apply_transform(chunk):
            if piece:
                await self._queue.put(piece)
                self.bytes_written += len(piece)

    def _apply_transform(self, chunk: bytes) -> Iterable[bytes]:
        if self.transform is None:
            return (chunk,)
        result = self.transform(chunk)
        if result is None:
            return ()
        if isinstance(result, (bytes, bytearray)):
            return (bytes(result),)
        return [bytes(piece) for piece in result]

    def close(self) -> None:
        """Signal end-of-data; buffered chunks remain readable."""
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # Reader drains the buffer first; the sentinel follows via the
            # closed flag in read_chunk.
            logger.debug(f"Channel {self.name} closed with full buffer")

    async def read_chunk(self, timeout: Optional[float] = None) -> Optional[bytes]:
        """Next chunk, or ``None`` once the writer closed and the buffer is empty."""
        if self._eof_seen:
            return None
        if self._closed and self._queue.empty():
            self._eof_seen = True
            return None

        if timeout is None:
            chunk = await self._queue.get()
        else:
            chunk = await asyncio.wait_for(self._queue.get(), timeout=timeout)

        if chunk is None:
            self._eof_seen = True
            return None
        self.bytes_read += len(chunk)
        return chunk

    async def read_all(self) -> bytes:
        """Read until end-of-data and return everything joined."""
        parts = []
        while True:
            chunk = await self.read_chunk()
            if chunk is None:
                return b"".join(parts)
            parts.append(chunk)

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        chunk = await self.read_chunk()
        if chunk is None:
            raise StopAsyncIteration
        return chunk
