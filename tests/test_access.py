"""Tests for client identification and permission rules."""

import pytest

from mcp_engine.access import (
    AccessControlMiddleware,
    ClientIdentifier,
    ConnectionContext,
    PermissionEngine,
)
from mcp_engine.config.models import AccessRule, AuthConfig, ClientRule
from mcp_engine.dispatch.codec import Envelope
from mcp_engine.errors import ForbiddenError, UnauthorizedError


@pytest.fixture()
def auth():
    return AuthConfig(
        clients={
            "desktop": ClientRule(
                identify_by=[{"client_info.name": "desktop-*"}, {"transport_type": "loopback"}],
                deny=[AccessRule(methods=["tools/call"], tools=["danger*"])],
            ),
            "ci": ClientRule(
                identify_by=[{"header.X-Token": "ci-secret"}],
                allow=[AccessRule(methods=["tools/*"], tools=["echo"])],
                deny_all_except_allowed=True,
            ),
            "scraper": ClientRule(
                identify_by=[{"user_agent": "curl/*"}],
                allow=[AccessRule(methods=["resources/read"], resources=["file:///public/*"])],
                deny_all_except_allowed=True,
            ),
        }
    )


class TestClientIdentifier:
    def test_identifies_by_client_info(self, auth):
        context = ConnectionContext(client_info={"name": "desktop-app"})
        assert ClientIdentifier(auth).identify_client(context) == "desktop"
        assert context.client_id == "desktop"

    def test_all_conditions_must_match(self, auth):
        context = ConnectionContext(client_info={"name": "desktop-app"}, transport_type="tcp")
        assert ClientIdentifier(auth).identify_client(context) is None

    def test_identifies_by_header_and_user_agent(self, auth):
        identifier = ClientIdentifier(auth)
        assert identifier.identify_client(ConnectionContext(headers={"X-Token": "ci-secret"})) == "ci"
        assert identifier.identify_client(ConnectionContext(headers={"User-Agent": "curl/8.0"})) == "scraper"

    def test_unknown_client(self, auth):
        assert ClientIdentifier(auth).identify_client(ConnectionContext()) is None


class TestPermissionEngine:
    def test_deny_wins(self, auth):
        engine = PermissionEngine(auth)
        assert engine.check_tool_access("desktop", "echo")
        assert not engine.check_tool_access("desktop", "danger_zone")

    def test_deny_all_except_allowed(self, auth):
        engine = PermissionEngine(auth)
        assert engine.check_tool_access("ci", "echo")
        assert not engine.check_tool_access("ci", "countdown")
        assert not engine.check_access("ci", "resources/list", {})

    def test_resource_patterns(self, auth):
        engine = PermissionEngine(auth)
        assert engine.check_resource_access("scraper", "file:///public/a.txt")
        assert not engine.check_resource_access("scraper", "file:///private/a.txt")

    def test_anonymous_without_default_rule(self, auth):
        assert not PermissionEngine(auth).check_access(None, "ping", {})
        auth.allow_anonymous = True
        assert PermissionEngine(auth).check_access(None, "ping", {})

    def test_default_rule_applies_to_unknown_clients(self):
        auth = AuthConfig(
            clients={
                "default": ClientRule(
                    identify_by=[{"transport_type": "never"}],
                    allow=[AccessRule(methods=["ping"])],
                    deny_all_except_allowed=True,
                )
            }
        )
        engine = PermissionEngine(auth)
        assert engine.check_access(None, "ping", {})
        assert not engine.check_access(None, "tools/list", {})

    def test_request_target(self):
        assert PermissionEngine.request_target("tools/call", {"name": "echo"}) == ("tools", "echo")
        assert PermissionEngine.request_target("resources/read", {"id": "R1"}) == ("resources", "R1")
        assert PermissionEngine.request_target("ping", {}) is None

    def test_client_permissions_summary(self, auth):
        summary = PermissionEngine(auth).get_client_permissions("ci")
        assert summary["deny_all_except_allowed"] is True
        assert PermissionEngine(auth).get_client_permissions("nobody") == {"error": "Client not found"}


class TestAccessControlMiddleware:
    @pytest.mark.asyncio
    async def test_decisions(self, auth):
        middleware = AccessControlMiddleware.from_config(auth)

        anonymous = await middleware(ConnectionContext(transport_type="tcp"), Envelope("ping", id=1))
        assert not anonymous.allowed
        assert isinstance(anonymous.error, UnauthorizedError)

        context = ConnectionContext(headers={"X-Token": "ci-secret"})
        allowed = await middleware(context, Envelope("tools/call", {"name": "echo"}, id=2))
        assert allowed.allowed
        assert allowed.client_id == "ci"

        denied = await middleware(context, Envelope("tools/call", {"name": "countdown"}, id=3))
        assert isinstance(denied.error, ForbiddenError)
        assert "countdown" in denied.error.message
