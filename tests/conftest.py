"""Shared pytest fixtures and helpers for engine tests."""

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, Optional

import pytest
import pytest_asyncio
import yaml

from mcp_engine.client import ClientSession, LoopbackTransport
from mcp_engine.config.models import EngineConfig, RuntimeConfig, SessionConfig
from mcp_engine.core import ContextEngine
from mcp_engine.dispatch import Dispatcher
from mcp_engine.execution import ExecutionEngine
from mcp_engine.registry import Registry


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _methods_of(data) -> set:
    try:
        decoded = json.loads(data)
    except ValueError:
        return set()
    items = decoded if isinstance(decoded, list) else [decoded]
    return {item.get("method") for item in items if isinstance(item, dict)}


class DelayedEndpoint:
    """Wraps an endpoint, delaying or swallowing responses for chosen methods."""

    def __init__(self, inner, delays: Optional[Dict[str, float]] = None, silent: tuple = ()):
        self.inner = inner
        self.delays = dict(delays or {})
        self.silent = set(silent)

    async def handle(self, data):
        methods = _methods_of(data)
        if methods & self.silent:
            return None
        for method, delay in self.delays.items():
            if method in methods:
                await asyncio.sleep(delay)
        return await self.inner.handle(data)

    def attach(self, sink) -> None:
        self.inner.attach(sink)


def fast_config(**overrides: Any) -> EngineConfig:
    """EngineConfig with short timeouts suitable for tests."""
    runtime = RuntimeConfig(operation_timeout=2.0, cancel_poll_interval=0.01, result_retention=60.0)
    session = SessionConfig(timeout=2.0, max_retries=3, retry_delay=0.01, backoff="fixed")
    defaults: Dict[str, Any] = {"runtime": runtime, "session": session}
    defaults.update(overrides)
    return EngineConfig(**defaults)


def write_config(path: Path, data: Dict[str, Any]) -> Path:
    path.write_text(yaml.safe_dump(data))
    return path


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def registry() -> Registry:
    return Registry()


@pytest.fixture()
def executions(registry: Registry) -> ExecutionEngine:
    return ExecutionEngine(registry, operation_timeout=1.0, cancel_poll_interval=0.01)


@pytest.fixture()
def dispatcher(registry: Registry, executions: ExecutionEngine) -> Dispatcher:
    from mcp_engine.core.tools import TOOL_CATALOG

    return Dispatcher(registry, executions, tool_catalog=TOOL_CATALOG)


@pytest_asyncio.fixture()
async def engine():
    """Started ContextEngine with the built-in tools installed."""
    ctx_engine = ContextEngine(fast_config())
    await ctx_engine.start()
    yield ctx_engine
    await ctx_engine.stop()


@pytest_asyncio.fixture()
async def session(engine: ContextEngine):
    """Connected ClientSession talking to ``engine`` over loopback."""
    client = ClientSession(LoopbackTransport(engine), fast_config().session)
    await client.connect()
    yield client
    await client.close()
