"""Backend endpoints reachable through the proxy."""

import asyncio
import logging
import time
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from ..client.transport import Endpoint
from ..dispatch import codec

logger = logging.getLogger(__name__)


class HealthStatus(Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class Backend:
    """One engine endpoint plus the proxy's bookkeeping about it."""

    def __init__(self, backend_id: str, endpoint: Endpoint):
        self.backend_id = backend_id
        self.endpoint = endpoint
        self.health = HealthStatus.UNKNOWN
        self.added_at = datetime.now()
        self.last_activity: Optional[datetime] = None
        self.last_health_check: Optional[datetime] = None
        self.request_count = 0
        self.error_count = 0
        self.in_flight = 0
        self.total_response_time = 0.0

    @property
    def is_healthy(self) -> bool:
        # Unknown counts as healthy until the first check says otherwise.
        return self.health != HealthStatus.UNHEALTHY

    @property
    def load(self) -> int:
        return self.in_flight

    @property
    def average_response_time(self) -> float:
        if not self.request_count:
            return 0.0
        return self.total_response_time / self.request_count

    async def forward(self, data: Union[bytes, str]) -> Optional[bytes]:
        """Hand one encoded message to the endpoint and track the outcome."""
        self.in_flight += 1
        self.request_count += 1
        self.last_activity = datetime.now()
        started = time.monotonic()
        try:
            return await self.endpoint.handle(data)
        except Exception:
            self.error_count += 1
            raise
        finally:
            self.total_response_time += time.monotonic() - started
            self.in_flight -= 1

    async def call(self, method: str, params: Optional[Dict[str, Any]] = None, timeout: float = 10.0) -> Any:
        """Issue a proxy-originated request (health checks, stats)."""
        response = await asyncio.wait_for(
            self.endpoint.handle(codec.dumps(codec.request(f"proxy-{method}", method, params))),
            timeout=timeout,
        )
        frames = codec.decode_incoming(response) if response is not None else []
        if not frames or not isinstance(frames[0], codec.ResponseFrame):
            raise RuntimeError(f"No response to {method} from {self.backend_id}")
        frame = frames[0]
        if frame.error is not None:
            raise RuntimeError(f"{method} failed on {self.backend_id}: {frame.error.message}")
        return frame.result

    async def health_check(self, timeout: float = 10.0) -> HealthStatus:
        """Ping the backend and record whether it answered in time."""
        self.last_health_check = datetime.now()
        try:
            await self.call("ping", timeout=timeout)
            status = HealthStatus.HEALTHY
        except Exception as e:
            logger.warning(f"Health check failed for {self.backend_id}: {e}")
            status = HealthStatus.UNHEALTHY

        if status != self.health:
            logger.info(f"Backend {self.backend_id} is now {status.value}")
        self.health = status
        return status

    def mark_unhealthy(self) -> None:
        """Take the backend out of rotation until a health check passes."""
        self.health = HealthStatus.UNHEALTHY

    def get_status(self) -> Dict[str, Any]:
        """Health and traffic counters for status output."""
        return {
            "backend_id": self.backend_id,
            "health": self.health.value,
            "requests": self.request_count,
            "errors": self.error_count,
            "in_flight": self.in_flight,
            "average_response_time": self.average_response_time,
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
            "last_health_check": (
                self.last_health_check.isoformat() if self.last_health_check else None
            ),
        }
