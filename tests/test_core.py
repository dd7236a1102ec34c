"""Tests for the assembled engine, the manager and configuration hot reload."""

import os

import pytest

from mcp_engine.config.models import PromptSeed, ResourceSeed
from mcp_engine.core import ConfigWatcher, ContextEngine, EngineManager, builtin_tools
from mcp_engine.registry import EntryKind

from .conftest import fast_config, write_config


def proxy_config(backends, **proxy):
    return {
        "runtime": {"operation_timeout": 2.0, "cancel_poll_interval": 0.01},
        "session": {"timeout": 2.0, "retry_delay": 0.01},
        "proxy": {
            "enabled": True,
            "health_check": {"enabled": False},
            "backends": backends,
            **proxy,
        },
    }


def touch_later(path):
    stat = path.stat()
    os.utime(path, (stat.st_atime, stat.st_mtime + 5))


class TestContextEngine:
    @pytest.mark.asyncio
    async def test_seeds_are_registered(self):
        config = fast_config(
            resources=[ResourceSeed(uri="db://tables", text="users")],
            prompts=[PromptSeed(name="hello", template="Hi")],
        )
        async with ContextEngine(config) as engine:
            assert engine.registry.stats() == {"resources": 1, "tools": 3, "prompts": 1}
            assert engine.registry.read_resource("R1")[1] == b"users"
            status = engine.get_status()
            assert status["running"] is True
        assert not engine.running

    def test_builtin_tool_selection(self):
        assert [tool.name for tool in builtin_tools(["echo"])] == ["echo"]
        assert len(builtin_tools()) == 3


class TestEngineManager:
    @pytest.mark.asyncio
    async def test_local_session_without_proxy(self):
        manager = EngineManager(config=fast_config())
        await manager.start()
        try:
            assert manager.router is None
            async with manager.session() as session:
                result = await session.call("tools/call", {"name": "echo", "input": "hello"})
                assert result["output"] == {"text": "hello"}
            with pytest.raises(RuntimeError):
                manager.session(via_proxy=True)
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_proxy_backends_follow_reload(self, tmp_path):
        path = write_config(
            tmp_path / "engine.yaml",
            proxy_config({"a": {"resources": [{"uri": "a://1", "text": "from a"}]}}),
        )
        manager = EngineManager(str(path))
        await manager.start()
        try:
            assert [b.backend_id for b in manager.router.backends] == ["a"]
            async with manager.session() as session:
                listing = await session.call("resources/list")
                assert [r["uri"] for r in listing["resources"]] == ["a://1"]

            write_config(path, proxy_config({"b": {}}, selection="least_loaded"))
            await manager.reload_config()
            assert [b.backend_id for b in manager.router.backends] == ["b"]
            assert set(manager.backend_engines) == {"b"}
            assert manager.router.selector.name == "least_loaded"

            write_config(path, {"proxy": {"enabled": False}})
            await manager.reload_config()
            assert manager.router is None
            assert manager.backend_engines == {}
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_modified_backend_is_replaced(self, tmp_path):
        path = write_config(tmp_path / "engine.yaml", proxy_config({"a": {}}))
        manager = EngineManager(str(path))
        await manager.start()
        try:
            original = manager.backend_engines["a"]
            write_config(
                path, proxy_config({"a": {"prompts": [{"name": "p", "template": "x"}]}})
            )
            await manager.reload_config()
            assert manager.backend_engines["a"] is not original
            assert manager.backend_engines["a"].registry.count(EntryKind.PROMPT) == 1
            assert not original.running
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_reload_without_file(self):
        manager = EngineManager(config=fast_config())
        with pytest.raises(RuntimeError):
            await manager.reload_config()

    def test_config_summary(self, tmp_path):
        path = write_config(tmp_path / "engine.yaml", proxy_config({"a": {}, "b": {"enabled": False}}))
        summary = EngineManager(str(path)).get_config_summary()
        assert summary["proxy"]["backends"] == 2
        assert summary["proxy"]["enabled_backends"] == 1
        assert summary["proxy"]["rate_limit"] == "token_bucket"


class TestConfigWatcher:
    @pytest.mark.asyncio
    async def test_reloads_on_change(self, tmp_path):
        path = write_config(tmp_path / "engine.yaml", proxy_config({"a": {}}))
        manager = EngineManager(str(path))
        await manager.start()
        watcher = ConfigWatcher(str(path), manager)
        watcher.last_modified = path.stat().st_mtime
        try:
            assert await watcher.check_for_changes() is False

            write_config(path, proxy_config({"a": {}, "b": {}}))
            touch_later(path)
            assert await watcher.check_for_changes() is True
            assert watcher.reloads == 1
            assert {b.backend_id for b in manager.router.backends} == {"a", "b"}
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_invalid_change_keeps_previous_config(self, tmp_path):
        path = write_config(tmp_path / "engine.yaml", proxy_config({"a": {}}))
        manager = EngineManager(str(path))
        await manager.start()
        watcher = ConfigWatcher(str(path), manager)
        watcher.last_modified = path.stat().st_mtime
        try:
            write_config(path, proxy_config({}))
            touch_later(path)
            assert await watcher.check_for_changes() is False
            assert watcher.reloads == 0
            assert [b.backend_id for b in manager.router.backends] == ["a"]
        finally:
            await manager.stop()
