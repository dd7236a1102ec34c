"""Proxy router: rate limiting, auth and forwarding across backends."""

import asyncio
import json
import logging
import time
from typing import Any, Dict, List, Optional, Tuple, Union

from ..access import AuthDecision, AuthHook, ClientIdentifier, ConnectionContext
from ..client.transport import Endpoint
from ..config.models import HealthCheckConfig
from ..dispatch import codec
from ..dispatch.codec import Batch, Envelope, InvalidEnvelope
from ..errors import (
    ProtocolError,
    RateLimitedError,
    RequestTimeoutError,
    UnauthorizedError,
    UnavailableError,
)
from .aggregator import StatsAggregator
from .backend import Backend, HealthStatus
from .balancer import BackendSelector, RoundRobinSelector
from .rate_limit import RateLimiter

logger = logging.getLogger(__name__)


class ProxyStats:
    def __init__(self):
        self.total_requests = 0
        self.forwarded = 0
        self.rate_limited = 0
        self.unauthorized = 0
        self.forbidden = 0
        self.unavailable = 0
        self.timeouts = 0
        self.backend_errors = 0
        self.active_requests = 0
        self.active_connections = 0
        self.total_response_time = 0.0

    @property
    def average_response_time(self) -> float:
        if not self.forwarded:
            return 0.0
        return self.total_response_time / self.forwarded

    def to_dict(self) -> Dict[str, Any]:
        """Proxy counters as a plain dict."""
        return {
            "total_requests": self.total_requests,
            "forwarded": self.forwarded,
            "rate_limited": self.rate_limited,
            "unauthorized": self.unauthorized,
            "forbidden": self.forbidden,
            "unavailable": self.unavailable,
            "timeouts": self.timeouts,
            "backend_errors": self.backend_errors,
            "active_requests": self.active_requests,
            "active_connections": self.active_connections,
            "average_response_time": self.average_response_time,
        }


class ProxyRouter:
    """Forwards inbound messages to one of several backend engines.

    Every inbound message passes the rate limiter, then the auth hook, and
    is then forwarded to a backend chosen among the healthy ones. The
    backend set is an immutable tuple replaced under a lock, so a forward
    keeps the backend it selected even if that backend is removed
    meanwhile. Rejections are never retried by the proxy.
    """

    def __init__(
        self,
        selector: Optional[BackendSelector] = None,
        rate_limiter: Optional[RateLimiter] = None,
        auth_hook: Optional[AuthHook] = None,
        request_timeout: float = 30.0,
        rate_limit_key: str = "client_id",
        health_check: Optional[HealthCheckConfig] = None,
        identifier: Optional[ClientIdentifier] = None,
    ):
        self.selector = selector or RoundRobinSelector()
        self.rate_limiter = rate_limiter
        self.auth_hook = auth_hook
        self.identifier = identifier
        self.request_timeout = request_timeout
        self.rate_limit_key = rate_limit_key
        self.health_check = health_check or HealthCheckConfig()
        self.aggregator = StatsAggregator(timeout=self.health_check.timeout)
        self.stats = ProxyStats()
        self._backends: Tuple[Backend, ...] = ()
        self._lock = asyncio.Lock()
        self._health_task: Optional[asyncio.Task] = None

    # Backend set

    @property
    def backends(self) -> Tuple[Backend, ...]:
        return self._backends

    def get_backend(self, backend_id: str) -> Optional[Backend]:
        """Look up a backend by id."""
        for backend in self._backends:
            if backend.backend_id == backend_id:
                return backend
        return None

    async def add_backend(self, backend_id: str, endpoint: Endpoint) -> Backend:
        """Register a backend endpoint; ids must be unique."""
        async with self._lock:
            if self.get_backend(backend_id) is not None:
                raise ValueError(f"Backend already registered: {backend_id}")
            backend = Backend(backend_id, endpoint)
            self._backends = self._backends + (backend,)
        logger.info(f"Added backend {backend_id} ({len(self._backends)} total)")
        return backend

    async def remove_backend(self, backend_id: str) -> bool:
        """Remove a backend; in-flight forwards to it still complete."""
        async with self._lock:
            remaining = tuple(b for b in self._backends if b.backend_id != backend_id)
            if len(remaining) == len(self._backends):
                return False
            self._backends = remaining
        logger.info(f"Removed backend {backend_id} ({len(self._backends)} remaining)")
        return True

    # Lifecycle

    async def start(self) -> None:
        """Start the periodic health check, if enabled."""
        if self.health_check.enabled and self._health_task is None:
            self._health_task = asyncio.create_task(self._health_loop(), name="proxy_health")
        logger.info(f"Proxy router started with {len(self._backends)} backends")

    async def stop(self) -> None:
        """Stop the health check loop."""
        if self._health_task:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None
        logger.info("Proxy router stopped")

    async def check_health(self) -> Dict[str, HealthStatus]:
        """Probe every backend and return its health status."""
        backends = self._backends
        statuses = await asyncio.gather(
            *(b.health_check(self.health_check.timeout) for b in backends)
        )
        return {b.backend_id: status for b, status in zip(backends, statuses)}

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.health_check.interval)
            try:
                await self.check_health()
            except Exception as e:
                logger.error(f"Error in health check loop: {e}")

    # Request path

    def endpoint(self, context: Optional[ConnectionContext] = None) -> "ProxyEndpoint":
        """An endpoint a transport can connect to, bound to one connection context."""
        return ProxyEndpoint(self, context or ConnectionContext())

    async def handle_request(
        self, data: Union[bytes, str], context: Optional[ConnectionContext] = None
    ) -> Optional[bytes]:
        """Rate limit, authorize and forward one inbound message."""
        context = context or ConnectionContext()
        self.stats.total_requests += 1
        self.stats.active_requests += 1
        try:
            return await self._handle(data, context)
        finally:
            self.stats.active_requests -= 1

    async def _handle(self, data: Union[bytes, str], context: ConnectionContext) -> Optional[bytes]:
        """Decode, rate limit and authorize before forwarding."""
        try:
            message = codec.decode(data)
        except ProtocolError as e:
            return codec.dumps(codec.failure(None, e))

        if not self._acquire(context):
            error = RateLimitedError(
                "Rate limit exceeded",
                {"retryAfter": round(self.rate_limiter.retry_after(self._limit_key(context)), 3)},
            )
            self.stats.rate_limited += 1
            return self._reject(message, error)

        if isinstance(message, Batch):
            return await self._handle_batch(message, context)
        if isinstance(message, InvalidEnvelope):
            return codec.dumps(codec.failure(message.id, message.error))

        self._capture_client_info(message, context)
        decision = await self._authorize(message, context)
        if not decision.allowed:
            return self._reject(message, decision.error)

        return await self._forward(data, message)

    async def _handle_batch(self, batch: Batch, context: ConnectionContext) -> Optional[bytes]:
        """Authorize batch items one by one and forward the allowed ones together."""
        # Positions answered locally hold their response; the rest are forwarded.
        local: Dict[int, Optional[Dict[str, Any]]] = {}
        forwarded: List[Tuple[int, Envelope]] = []
        for position, item in enumerate(batch.items):
            if isinstance(item, InvalidEnvelope):
                local[position] = codec.failure(item.id, item.error)
                continue
            self._capture_client_info(item, context)
            decision = await self._authorize(item, context)
            if decision.allowed:
                forwarded.append((position, item))
            else:
                local[position] = None if item.is_notification else codec.failure(item.id, decision.error)

        remote: List[Any] = []
        if forwarded:
            outbound = [
                codec.notification(item.method, item.params)
                if item.is_notification
                else codec.request(item.id, item.method, item.params)
                for _, item in forwarded
            ]
            anchor = next((item for _, item in forwarded if not item.is_notification), forwarded[0][1])
            response = await self._forward(codec.dumps(outbound), anchor)
            if response is not None:
                decoded = json.loads(response)
                if isinstance(decoded, list):
                    remote = decoded
                else:
                    # The whole forward failed; answer every forwarded request with it.
                    remote = [
                        {**decoded, "id": item.id} for _, item in forwarded if not item.is_notification
                    ]

        responses = []
        remote_iter = iter(remote)
        for position, item in enumerate(batch.items):
            if position in local:
                if local[position] is not None:
                    responses.append(local[position])
            elif not item.is_notification:
                responses.append(next(remote_iter, None))
        responses = [r for r in responses if r is not None]
        return codec.dumps(responses) if responses else None

    async def _forward(self, data: Union[bytes, str], envelope: Envelope) -> Optional[bytes]:
        """Send to a selected backend, mapping timeouts and failures to typed errors."""
        backend = self.selector.select(self._backends)
        if backend is None:
            self.stats.unavailable += 1
            return self._reject(envelope, UnavailableError("No healthy backend available"))

        started = time.monotonic()
        try:
            response = await asyncio.wait_for(backend.forward(data), timeout=self.request_timeout)
        except asyncio.TimeoutError:
            self.stats.timeouts += 1
            logger.warning(f"Forward of {envelope.method} to {backend.backend_id} timed out")
            return self._reject(
                envelope,
                RequestTimeoutError(f"Backend {backend.backend_id} timed out after {self.request_timeout}s"),
            )
        except Exception as e:
            self.stats.backend_errors += 1
            backend.mark_unhealthy()
            logger.error(f"Backend {backend.backend_id} failed on {envelope.method}: {e}")
            return self._reject(envelope, UnavailableError(f"Backend {backend.backend_id} failed"))

        self.stats.forwarded += 1
        self.stats.total_response_time += time.monotonic() - started
        return response

    def _acquire(self, context: ConnectionContext) -> bool:
        if self.rate_limiter is None:
            return True
        return self.rate_limiter.try_acquire(self._limit_key(context))

    def _limit_key(self, context: ConnectionContext) -> str:
        """Rate limit bucket for this connection."""
        if context.client_id is None and self.identifier is not None:
            self.identifier.identify_client(context)
        if self.rate_limit_key == "remote_address":
            return context.remote_address or "anonymous"
        return context.client_id or context.remote_address or "anonymous"

    async def _authorize(self, envelope: Envelope, context: ConnectionContext) -> AuthDecision:
        if self.auth_hook is None:
            return AuthDecision.allow(context.client_id)
        decision = await self.auth_hook(context, envelope)
        if not decision.allowed:
            if isinstance(decision.error, UnauthorizedError):
                self.stats.unauthorized += 1
            else:
                self.stats.forbidden += 1
        return decision

    @staticmethod
    def _capture_client_info(envelope: Envelope, context: ConnectionContext) -> None:
        client_info = envelope.params.get("clientInfo")
        if envelope.method == "initialize" and isinstance(client_info, dict) and not context.client_info:
            context.client_info = dict(client_info)

    @staticmethod
    def _reject(message: Any, error: ProtocolError) -> Optional[bytes]:
        """Error response for every request in ``message``; None for notifications."""
        if isinstance(message, Batch):
            responses = [
                codec.failure(item.id, error)
                for item in message.items
                if not item.is_notification
            ]
            return codec.dumps(responses) if responses else None
        if message.is_notification:
            return None
        return codec.dumps(codec.failure(message.id, error))

    # Introspection

    async def aggregate_stats(self) -> Dict[str, Any]:
        """Collect and total server/stats from every backend."""
        return await self.aggregator.aggregate(self._backends)

    def get_stats(self) -> Dict[str, Any]:
        """Router counters, limiter state and per-backend status."""
        return {
            "proxy": self.stats.to_dict(),
            "selection": self.selector.name,
            "rate_limit": self.rate_limiter.get_stats() if self.rate_limiter else None,
            "backends": [b.get_status() for b in self._backends],
        }


class ProxyEndpoint:
    """Binds a router to one connection so a transport can talk to it."""

    def __init__(self, router: ProxyRouter, context: ConnectionContext):
        self.router = router
        self.context = context
        self._attached = False

    async def handle(self, data: Union[bytes, str]) -> Optional[bytes]:
        return await self.router.handle_request(data, self.context)

    def attach(self, sink) -> None:
        """Track the connection count as transports come and go."""
        # Transports attach on connect and detach on close.
        if sink is not None and not self._attached:
            self.router.stats.active_connections += 1
        elif sink is None and self._attached:
            self.router.stats.active_connections -= 1
        self._attached = sink is not None
