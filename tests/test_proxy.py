"""Tests for the proxy router: rate limiting, auth, selection and forwarding."""

import asyncio
import json

import pytest
import pytest_asyncio

from mcp_engine.access import AccessControlMiddleware, AuthDecision, ConnectionContext
from mcp_engine.client import ClientSession, LoopbackTransport
from mcp_engine.config.models import AccessRule, AuthConfig, ClientRule, HealthCheckConfig
from mcp_engine.core import ContextEngine
from mcp_engine.errors import ForbiddenError, UnauthorizedError
from mcp_engine.proxy import (
    HealthStatus,
    LeastLoadedSelector,
    ProxyRouter,
    TokenBucketLimiter,
)

from .conftest import DelayedEndpoint, fast_config


def ping(request_id):
    return json.dumps({"jsonrpc": "2.0", "id": request_id, "method": "ping"}).encode()


def kind_of(response):
    decoded = json.loads(response)
    return decoded["error"]["data"]["kind"] if "error" in decoded else "ok"


class BrokenEndpoint:
    async def handle(self, data):
        raise RuntimeError("backend crashed")


@pytest_asyncio.fixture()
async def backends():
    engines = [ContextEngine(fast_config(), name=f"backend-{i}") for i in range(2)]
    for engine in engines:
        await engine.start()
    yield engines
    for engine in engines:
        await engine.stop()


def quiet_router(**kwargs):
    return ProxyRouter(health_check=HealthCheckConfig(enabled=False), **kwargs)


class TestRateLimiting:
    @pytest.mark.asyncio
    async def test_sixth_request_is_rate_limited(self, backends, clock):
        router = quiet_router(
            rate_limiter=TokenBucketLimiter(max_requests=5, burst_size=5, window_size=1.0, clock=clock)
        )
        await router.add_backend("b0", backends[0])
        context = ConnectionContext(remote_address="10.0.0.1")

        kinds = [kind_of(await router.handle_request(ping(i), context)) for i in range(6)]
        assert kinds == ["ok"] * 5 + ["rate-limited"]

        clock.advance(1.1)
        assert kind_of(await router.handle_request(ping(7), context)) == "ok"
        assert router.stats.rate_limited == 1
        assert router.stats.forwarded == 6

    @pytest.mark.asyncio
    async def test_rate_limited_error_carries_retry_after(self, backends, clock):
        router = quiet_router(rate_limiter=TokenBucketLimiter(1, window_size=10.0, clock=clock))
        await router.add_backend("b0", backends[0])

        await router.handle_request(ping(1))
        error = json.loads(await router.handle_request(ping(2)))["error"]
        assert error["data"]["retryAfter"] == pytest.approx(10.0)

    @pytest.mark.asyncio
    async def test_batch_counts_once(self, backends, clock):
        router = quiet_router(rate_limiter=TokenBucketLimiter(1, window_size=10.0, clock=clock))
        await router.add_backend("b0", backends[0])

        batch = json.dumps([json.loads(ping(1)), json.loads(ping(2))]).encode()
        responses = json.loads(await router.handle_request(batch))
        assert [r["id"] for r in responses] == [1, 2]
        assert all("result" in r for r in responses)

        limited = json.loads(await router.handle_request(batch))
        assert [r["error"]["data"]["kind"] for r in limited] == ["rate-limited", "rate-limited"]


class TestSelection:
    @pytest.mark.asyncio
    async def test_round_robin_alternates(self, backends):
        router = quiet_router()
        await router.add_backend("b0", backends[0])
        await router.add_backend("b1", backends[1])

        for i in range(4):
            await router.handle_request(ping(i))
        assert [b.request_count for b in router.backends] == [2, 2]

    @pytest.mark.asyncio
    async def test_least_loaded_prefers_idle_backend(self, backends):
        slow = DelayedEndpoint(backends[0], delays={"ping": 0.1})
        router = quiet_router(selector=LeastLoadedSelector())
        await router.add_backend("slow", slow)
        await router.add_backend("fast", backends[1])

        first = asyncio.create_task(router.handle_request(ping(1)))
        await asyncio.sleep(0.01)
        await router.handle_request(ping(2))
        await first

        status = {b.backend_id: b.request_count for b in router.backends}
        assert status == {"slow": 1, "fast": 1}

    @pytest.mark.asyncio
    async def test_no_backend_is_unavailable(self):
        router = quiet_router()
        assert kind_of(await router.handle_request(ping(1))) == "unavailable"

    @pytest.mark.asyncio
    async def test_failing_backend_is_marked_unhealthy(self, backends):
        router = quiet_router()
        await router.add_backend("broken", BrokenEndpoint())
        await router.add_backend("good", backends[0])

        assert kind_of(await router.handle_request(ping(1))) == "unavailable"
        assert router.get_backend("broken").health == HealthStatus.UNHEALTHY

        # Traffic now only reaches the healthy backend.
        for i in range(3):
            assert kind_of(await router.handle_request(ping(i))) == "ok"

    @pytest.mark.asyncio
    async def test_backend_timeout(self, backends):
        router = quiet_router(request_timeout=0.02)
        await router.add_backend("slow", DelayedEndpoint(backends[0], delays={"ping": 0.2}))
        assert kind_of(await router.handle_request(ping(1))) == "timeout"
        assert router.stats.timeouts == 1

    @pytest.mark.asyncio
    async def test_add_and_remove_backends(self, backends):
        router = quiet_router()
        await router.add_backend("b0", backends[0])
        with pytest.raises(ValueError):
            await router.add_backend("b0", backends[1])
        assert await router.remove_backend("b0")
        assert not await router.remove_backend("b0")
        assert router.backends == ()

    @pytest.mark.asyncio
    async def test_health_check(self, backends):
        router = quiet_router()
        await router.add_backend("good", backends[0])
        await router.add_backend("silent", DelayedEndpoint(backends[1], silent=("ping",)))
        statuses = await router.check_health()
        assert statuses == {"good": HealthStatus.HEALTHY, "silent": HealthStatus.UNHEALTHY}


class TestAuthHook:
    @staticmethod
    def auth_config():
        return AuthConfig(
            clients={
                "reader": ClientRule(
                    identify_by=[{"client_info.name": "reader-*"}],
                    allow=[AccessRule(methods=["initialize", "ping", "*/list", "resources/read"])],
                    deny_all_except_allowed=True,
                )
            }
        )

    @pytest.mark.asyncio
    async def test_unidentified_client_is_unauthorized(self, backends):
        router = quiet_router(auth_hook=AccessControlMiddleware.from_config(self.auth_config()))
        await router.add_backend("b0", backends[0])
        assert kind_of(await router.handle_request(ping(1))) == "unauthorized"
        assert router.stats.unauthorized == 1

    @pytest.mark.asyncio
    async def test_session_through_proxy(self, backends):
        router = quiet_router(auth_hook=AccessControlMiddleware.from_config(self.auth_config()))
        await router.add_backend("b0", backends[0])

        client = ClientSession(
            LoopbackTransport(router.endpoint()),
            fast_config().session,
            client_info={"name": "reader-1", "version": "1"},
        )
        await client.connect()
        try:
            assert router.stats.active_connections == 1
            tools = await client.call("tools/list")
            assert len(tools["tools"]) == 3
            with pytest.raises(ForbiddenError):
                await client.call("tools/call", {"name": "echo"})
            assert router.stats.forbidden == 1
        finally:
            await client.close()
        assert router.stats.active_connections == 0

    @pytest.mark.asyncio
    async def test_custom_hook_and_batch_merge(self, backends):
        async def no_echo(context, envelope):
            if envelope.params.get("name") == "echo":
                return AuthDecision.deny(UnauthorizedError("nope"))
            return AuthDecision.allow()

        router = quiet_router(auth_hook=no_echo)
        await router.add_backend("b0", backends[0])
        batch = [
            {"jsonrpc": "2.0", "id": 1, "method": "ping"},
            {"jsonrpc": "2.0", "id": 2, "method": "tools/call", "params": {"name": "echo"}},
            {"jsonrpc": "2.0", "id": 3, "method": "tools/list"},
        ]
        responses = json.loads(await router.handle_request(json.dumps(batch).encode()))
        assert [r["id"] for r in responses] == [1, 2, 3]
        assert responses[1]["error"]["data"]["kind"] == "unauthorized"
        assert "tools" in responses[2]["result"]


class TestAggregation:
    @pytest.mark.asyncio
    async def test_totals_across_backends(self, backends):
        router = quiet_router()
        await router.add_backend("b0", backends[0])
        await router.add_backend("b1", backends[1])
        await router.add_backend("broken", BrokenEndpoint())

        stats = await router.aggregate_stats()
        assert stats["totals"]["tools"] == 6
        assert stats["failed"] == ["broken"]
        assert set(stats["backends"]) == {"b0", "b1", "broken"}
