"""Client session: request correlation, reconnects and heartbeats."""

import asyncio
import itertools
import logging
import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import mcp.types as types

from ..config.models import SessionConfig
from ..dispatch import codec
from ..dispatch.codec import NotificationFrame, RequestId, ResponseFrame
from ..errors import (
    ConnectionFailedError,
    ConnectionLostError,
    InvalidRequestError,
    ProtocolError,
    RequestTimeoutError,
    TransportError,
)
from ..events import ReadinessHandle, Subscription
from .stats import ConnectionStats
from .transport import Transport

logger = logging.getLogger(__name__)

BatchCall = Tuple[str, Optional[Dict[str, Any]]]


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    ACTIVE = "active"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class ClientSession:
    """One logical connection to an engine (or a proxy in front of engines).

    Responses are matched to calls by correlation id only, so they may
    arrive in any order. A call whose deadline passes resolves with a
    timeout error and any response arriving for it later is discarded.
    """

    def __init__(
        self,
        transport: Transport,
        config: Optional[SessionConfig] = None,
        client_info: Optional[Dict[str, str]] = None,
        session_id: Optional[str] = None,
    ):
        self.transport = transport
        self.config = config or SessionConfig()
        self.client_info = client_info or {"name": "mcp-engine-client", "version": "1.0.0"}
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self.state = SessionState.DISCONNECTED
        self.server_info: Optional[Dict[str, Any]] = None
        self.protocol_version: Optional[str] = None
        self.stats = ConnectionStats(rtt_window=self.config.rtt_window)

        self._ids = itertools.count(1)
        self._pending: Dict[RequestId, asyncio.Future] = {}
        self._reader: Optional[asyncio.Task] = None
        self._heartbeat: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._closing = False
        self._messages = Subscription(f"session:{self.session_id}:messages")
        self._status = Subscription(f"session:{self.session_id}:status")

    @property
    def is_connected(self) -> bool:
        return self.state == SessionState.ACTIVE

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # Connection lifecycle

    async def connect(self) -> Dict[str, Any]:
        """Connect the transport and run the initialize handshake."""
        if self.state == SessionState.ACTIVE:
            return self.server_info

        self._set_state(SessionState.CONNECTING)
        try:
            await self._open()
        except (TransportError, ProtocolError):
            self._set_state(SessionState.FAILED)
            raise

        logger.info(
            f"Session {self.session_id} connected to "
            f"{self.server_info.get('name', 'unknown')} {self.server_info.get('version', '')}"
        )
        return self.server_info

    async def disconnect(self) -> None:
        """Close the session; outstanding calls fail with ConnectionLostError."""
        if self._reconnect_task and self._reconnect_task is not asyncio.current_task():
            self._reconnect_task.cancel()
        self._reconnect_task = None
        await self._teardown(ConnectionLostError("Session disconnected"))
        self._set_state(SessionState.DISCONNECTED)
        logger.info(f"Session {self.session_id} disconnected")

    async def reconnect(self) -> Dict[str, Any]:
        """Re-establish the connection, retrying up to ``max_retries`` times.

        Raises ConnectionFailedError once every attempt has failed; the
        session is then left FAILED until an explicit ``connect``.
        """
        await self._teardown(ConnectionLostError("Session reconnecting"))
        self._set_state(SessionState.RECONNECTING)

        max_retries = self.config.max_retries
        last_error: Optional[Exception] = None
        for attempt in range(1, max_retries + 1):
            self.stats.reconnect_attempts += 1
            try:
                await self._open()
                logger.info(f"Session {self.session_id} reconnected on attempt {attempt}")
                return self.server_info
            except (TransportError, ProtocolError) as e:
                last_error = e
                logger.warning(
                    f"Session {self.session_id} reconnect attempt {attempt}/{max_retries} failed: {e}"
                )
                if attempt < max_retries:
                    await asyncio.sleep(self.retry_delay(attempt))

        self._set_state(SessionState.FAILED)
        raise ConnectionFailedError(
            f"Reconnect failed after {max_retries} attempts: {last_error}",
            attempts=max_retries,
        ) from last_error

    def retry_delay(self, attempt: int) -> float:
        """Delay before the retry following ``attempt`` (1-based)."""
        delay = self.config.retry_delay
        if self.config.backoff == "exponential":
            delay = delay * (2 ** (attempt - 1))
        return min(delay, self.config.max_retry_delay)

    async def _open(self) -> None:
        """Connect the transport, start the reader and run the handshake."""
        await self.transport.connect()
        self._closing = False
        self._reader = asyncio.create_task(self._read_loop(), name=f"session_{self.session_id}_reader")
        try:
            result = await self._request(
                "initialize",
                {
                    "protocolVersion": types.LATEST_PROTOCOL_VERSION,
                    "clientInfo": dict(self.client_info),
                },
                self.config.timeout,
            )
        except (TransportError, ProtocolError):
            await self._teardown(ConnectionLostError("Handshake failed"))
            raise

        self.server_info = result.get("serverInfo") or {}
        self.protocol_version = result.get("protocolVersion")
        self.stats.mark_connected()
        self._set_state(SessionState.ACTIVE)

        if self.config.heartbeat_interval:
            self._heartbeat = asyncio.create_task(
                self._heartbeat_loop(self.config.heartbeat_interval),
                name=f"session_{self.session_id}_heartbeat",
            )

    async def _teardown(self, reason: Exception) -> None:
        """Stop background tasks and fail every pending call with ``reason``."""
        self._closing = True
        current = asyncio.current_task()
        for task in (self._heartbeat, self._reader):
            if task is not None and task is not current and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._heartbeat = None
        self._reader = None

        if self.transport.connected:
            await self.transport.close()
        self._fail_pending(reason)
        self.stats.mark_disconnected()

    # Calls

    async def call(
        self, method: str, params: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None
    ) -> Any:
        """Send a request and wait for its correlated response.

        Raises the typed ProtocolError carried by an error response,
        RequestTimeoutError when the deadline passes first, and
        ConnectionLostError when the connection drops meanwhile.
        """
        self._require_active()
        return await self._request(method, params, self._timeout(timeout))

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        """Send a notification; no response is expected."""
        self._require_active()
        await self._send(codec.notification(method, params))

    async def call_batch(
        self, calls: Sequence[BatchCall], timeout: Optional[float] = None
    ) -> List[Union[Any, ProtocolError]]:
        """Send several requests as one batch.

        Returns one slot per call in submission order, holding either the
        result or the ProtocolError for that call.
        """
        self._require_active()
        if not calls:
            return []

        loop = asyncio.get_running_loop()
        request_ids = [next(self._ids) for _ in calls]
        futures = []
        for request_id in request_ids:
            future = loop.create_future()
            self._pending[request_id] = future
            futures.append(future)

        try:
            await self._send(
                [codec.request(rid, method, params) for rid, (method, params) in zip(request_ids, calls)]
            )
            await asyncio.wait(futures, timeout=self._timeout(timeout))
        finally:
            for request_id in request_ids:
                self._pending.pop(request_id, None)

        results: List[Union[Any, ProtocolError]] = []
        for (method, _), future in zip(calls, futures):
            if not future.done():
                future.cancel()
                error = RequestTimeoutError(f"{method} timed out")
                self.stats.record_error(error.kind.value)
                results.append(error)
                continue
            if future.exception() is not None:
                raise future.exception()
            try:
                results.append(self._unwrap(future.result()))
            except ProtocolError as e:
                results.append(e)
        return results

    async def ping(self, timeout: Optional[float] = None) -> float:
        """Round-trip a ping; returns the elapsed seconds."""
        started = time.monotonic()
        await self.call("ping", timeout=timeout)
        rtt = time.monotonic() - started
        self.stats.record_rtt(rtt)
        return rtt

    def subscribe_messages(self) -> ReadinessHandle:
        """Readiness handle fed by server-initiated notification frames."""
        return self._messages.handle()

    def subscribe_state(self) -> ReadinessHandle:
        """Readiness handle fed by connection state changes."""
        return self._status.handle()

    async def close(self) -> None:
        """Disconnect and retire the session's subscriptions."""
        await self.disconnect()
        self._messages.close()
        self._status.close()

    async def __aenter__(self) -> "ClientSession":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # Internals

    async def _request(self, method: str, params: Optional[Dict[str, Any]], timeout: float) -> Any:
        """Register a correlation future, send the request and await its frame."""
        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send(codec.request(request_id, method, params))
            frame = await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            error = RequestTimeoutError(f"{method} timed out after {timeout}s")
            self.stats.record_error(error.kind.value)
            raise error
        finally:
            self._pending.pop(request_id, None)
        return self._unwrap(frame)

    def _unwrap(self, frame: ResponseFrame) -> Any:
        if frame.error is not None:
            error = ProtocolError.from_error_data(frame.error)
            self.stats.record_error(error.kind.value)
            raise error
        return frame.result

    async def _send(self, message: Any) -> None:
        try:
            await self.transport.send(codec.dumps(message))
        except TransportError as e:
            self.stats.record_error("transport")
            self._connection_lost(e)
            raise
        self.stats.record_sent()

    async def _read_loop(self) -> None:
        """Route response frames to their futures and notifications to subscribers."""
        while True:
            try:
                data = await self.transport.receive()
            except TransportError as e:
                if not self._closing:
                    self._connection_lost(e)
                return

            self.stats.record_received()
            try:
                frames = codec.decode_incoming(data)
            except InvalidRequestError as e:
                logger.warning(f"Session {self.session_id} dropped undecodable frame: {e.message}")
                continue

            for frame in frames:
                if isinstance(frame, NotificationFrame):
                    self._messages.publish(frame.method, frame.params)
                    continue
                future = self._pending.pop(frame.id, None)
                if future is None or future.done():
                    logger.debug(f"Session {self.session_id} discarded late response {frame.id}")
                    continue
                future.set_result(frame)

    async def _heartbeat_loop(self, interval: float) -> None:
        """Ping every ``interval`` seconds; a missed ping drops the connection."""
        while True:
            await asyncio.sleep(interval)
            try:
                await self.ping(timeout=min(interval, self.config.timeout))
            except RequestTimeoutError:
                logger.warning(f"Session {self.session_id} missed a heartbeat")
                self._connection_lost(ConnectionLostError("Heartbeat timed out"))
                return
            except TransportError:
                return

    def _connection_lost(self, error: Exception) -> None:
        """Transport failure: flip state, fail pending calls, maybe reconnect."""
        self._fail_pending(ConnectionLostError(str(error)))
        if self.state != SessionState.ACTIVE:
            return
        logger.warning(f"Session {self.session_id} lost its connection: {error}")
        self._closing = True
        self.stats.mark_disconnected()
        self._set_state(SessionState.DISCONNECTED)

        if self.config.auto_reconnect and self._reconnect_task is None:
            self._reconnect_task = asyncio.create_task(
                self._auto_reconnect(), name=f"session_{self.session_id}_reconnect"
            )

    async def _auto_reconnect(self) -> None:
        """Reconnect in the background after an unexpected drop."""
        try:
            await self.reconnect()
        except ConnectionFailedError as e:
            logger.error(f"Session {self.session_id} gave up reconnecting: {e}")
        finally:
            self._reconnect_task = None

    def _fail_pending(self, error: Exception) -> None:
        """Resolve every outstanding call with ``error``."""
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(error)

    def _require_active(self) -> None:
        if self.state != SessionState.ACTIVE:
            raise ConnectionLostError(f"Session {self.session_id} is {self.state.value}")

    def _timeout(self, timeout: Optional[float]) -> float:
        return self.config.timeout if timeout is None else timeout

    def _set_state(self, state: SessionState) -> None:
        """Record a state change and publish it to state subscribers."""
        if state == self.state:
            return
        previous, self.state = self.state, state
        self._status.publish("state-changed", {"from": previous.value, "to": state.value})

    def get_stats(self) -> Dict[str, Any]:
        """Session state together with its connection statistics."""
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "pending": len(self._pending),
            "server": self.server_info,
            **self.stats.to_dict(),
        }
