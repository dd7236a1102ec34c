"""Tests for request dispatch over the engine's wire interface."""

import asyncio
import json

import pytest

from mcp_engine.registry import EntryKind, ToolConfig


def rpc(request_id, method, params=None):
    message = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


async def send(endpoint, payload):
    response = await endpoint.handle(json.dumps(payload).encode())
    return json.loads(response) if response is not None else None


class TestSingleRequests:
    @pytest.mark.asyncio
    async def test_initialize_reports_capabilities(self, engine):
        response = await send(engine, rpc(1, "initialize", {"clientInfo": {"name": "test"}}))
        result = response["result"]
        assert result["serverInfo"]["name"] == "mcp-engine"
        assert "tools/call" in result["methods"]
        assert result["capabilities"]["resources"]["subscribe"] is True

    @pytest.mark.asyncio
    async def test_echo_tool_call(self, engine):
        response = await send(engine, rpc(1, "tools/call", {"name": "echo", "input": "hello"}))
        result = response["result"]
        assert result["state"] == "completed"
        assert result["output"] == {"text": "hello"}

    @pytest.mark.asyncio
    async def test_unknown_method(self, engine):
        response = await send(engine, rpc(1, "nope/nothing"))
        assert response["error"]["data"]["kind"] == "method-not-found"
        assert response["id"] == 1

    @pytest.mark.asyncio
    async def test_notification_gets_no_response(self, engine):
        assert await send(engine, {"jsonrpc": "2.0", "method": "ping"}) is None

    @pytest.mark.asyncio
    async def test_undecodable_message(self, engine):
        response = json.loads(await engine.handle(b"{broken"))
        assert response["id"] is None
        assert response["error"]["data"]["kind"] == "invalid-request"

    @pytest.mark.asyncio
    async def test_resource_lifecycle(self, engine):
        registered = await send(
            engine,
            rpc(1, "resources/register", {"uri": "file:///a", "content": "hi", "mimeType": "text/plain"}),
        )
        rid = registered["result"]["id"]

        read = await send(engine, rpc(2, "resources/read", {"id": rid}))
        assert read["result"]["contents"][0]["text"] == "hi"

        chunk = await send(engine, rpc(3, "resources/readChunk", {"uri": "file:///a", "chunkSize": 1}))
        assert chunk["result"] == {"chunk": {"text": "h"}, "offset": 1, "eof": False}

        await send(engine, rpc(4, "resources/unregister", {"id": rid}))
        missing = await send(engine, rpc(5, "resources/read", {"id": rid}))
        assert missing["error"]["data"]["kind"] == "resource-not-found"

    @pytest.mark.asyncio
    async def test_prompt_render(self, engine):
        await send(
            engine,
            rpc(
                1,
                "prompts/register",
                {
                    "name": "greet",
                    "template": "Hi {who}",
                    "arguments": [{"name": "who", "required": True}],
                },
            ),
        )
        rendered = await send(engine, rpc(2, "prompts/render", {"name": "greet", "arguments": {"who": "Bo"}}))
        assert rendered["result"]["content"] == "Hi Bo"

        missing_arg = await send(engine, rpc(3, "prompts/render", {"name": "greet"}))
        assert missing_arg["error"]["data"]["kind"] == "invalid-params"

    @pytest.mark.asyncio
    async def test_register_tool_by_catalog_handler(self, engine):
        response = await send(engine, rpc(1, "tools/register", {"name": "echo2", "handler": "echo"}))
        assert response["result"]["id"].startswith("T")
        called = await send(engine, rpc(2, "tools/call", {"name": "echo2", "input": "x"}))
        assert called["result"]["output"] == {"text": "x"}

        unknown = await send(engine, rpc(3, "tools/register", {"name": "bad", "handler": "nope"}))
        assert unknown["error"]["data"]["kind"] == "invalid-params"

    @pytest.mark.asyncio
    async def test_tool_validate(self, engine):
        ok = await send(engine, rpc(1, "tools/validate", {"name": "countdown", "input": '{"steps": 1}'}))
        assert ok["result"] == {"valid": True, "errors": []}
        bad = await send(engine, rpc(2, "tools/validate", {"name": "countdown", "input": '{"steps": "x"}'}))
        assert bad["result"]["valid"] is False

    @pytest.mark.asyncio
    async def test_execution_methods(self, engine):
        started = await send(
            engine,
            rpc(1, "tools/execute", {"name": "countdown", "input": '{"steps": 100, "interval": 0.01}'}),
        )
        execution_id = started["result"]["executionId"]

        chunk = await send(engine, rpc(2, "executions/read", {"executionId": execution_id, "timeout": 1}))
        assert chunk["result"]["chunk"] == {"text": "100\n"}

        cancelled = await send(engine, rpc(3, "executions/cancel", {"executionId": execution_id, "wait": True}))
        assert cancelled["result"]["state"] == "cancelled"

        unknown = await send(engine, rpc(4, "executions/get", {"executionId": "E999"}))
        assert unknown["error"]["data"]["kind"] == "invalid-params"

    @pytest.mark.asyncio
    async def test_server_stats(self, engine):
        await send(engine, rpc(1, "ping"))
        response = await send(engine, rpc(2, "server/stats"))
        stats = response["result"]
        assert stats["registry"]["tools"] == 3
        assert stats["dispatcher"]["requests"] >= 2


class TestBatches:
    @pytest.mark.asyncio
    async def test_mixed_batch_answers_in_order(self, engine):
        responses = await send(
            engine,
            [
                rpc(1, "ping"),
                rpc(2, "tools/list"),
                rpc(3, "tools/call", {"name": "missing"}),
            ],
        )
        assert [r["id"] for r in responses] == [1, 2, 3]
        assert responses[0]["result"] == {}
        assert {t["name"] for t in responses[1]["result"]["tools"]} == {"echo", "stream_echo", "countdown"}
        assert responses[2]["error"]["data"]["kind"] == "tool-not-found"

    @pytest.mark.asyncio
    async def test_slow_item_does_not_reorder(self, engine):
        async def slow(ctx):
            await asyncio.sleep(0.05)
            return b"slow"

        await engine.registry.register(EntryKind.TOOL, ToolConfig(name="slow", handler=slow))
        responses = await send(
            engine,
            [rpc("a", "tools/call", {"name": "slow"}), rpc("b", "ping")],
        )
        assert [r["id"] for r in responses] == ["a", "b"]
        assert responses[0]["result"]["output"] == {"text": "slow"}

    @pytest.mark.asyncio
    async def test_batch_skips_notifications(self, engine):
        responses = await send(
            engine,
            [rpc(1, "ping"), {"jsonrpc": "2.0", "method": "ping"}, {"jsonrpc": "2.0", "id": 2}],
        )
        assert [r["id"] for r in responses] == [1, 2]
        assert responses[1]["error"]["data"]["kind"] == "invalid-request"

    @pytest.mark.asyncio
    async def test_all_notification_batch_has_no_response(self, engine):
        assert await engine.handle(b'[{"jsonrpc":"2.0","method":"ping"}]') is None


class TestNotifications:
    @pytest.mark.asyncio
    async def test_list_changed_and_resource_updates(self, engine):
        frames = []

        async def sink(data):
            frames.append(json.loads(data))

        engine.attach(sink)
        registered = await send(engine, rpc(1, "resources/register", {"uri": "file:///n", "content": "1"}))
        rid = registered["result"]["id"]
        await send(engine, rpc(2, "resources/subscribe", {"id": rid}))
        await send(engine, rpc(3, "resources/update", {"id": rid, "content": "2"}))

        for _ in range(50):
            methods = {f["method"] for f in frames}
            if {"notifications/resources/updated", "notifications/resources/list_changed"} <= methods:
                break
            await asyncio.sleep(0.01)

        methods = {f["method"] for f in frames}
        assert "notifications/resources/list_changed" in methods
        assert "notifications/resources/updated" in methods
        updated = next(f for f in frames if f["method"] == "notifications/resources/updated")
        assert updated["params"]["id"] == rid

    @pytest.mark.asyncio
    async def test_unregister_delivers_removed_update(self, engine):
        frames = []

        async def sink(data):
            frames.append(json.loads(data))

        engine.attach(sink)
        registered = await send(engine, rpc(1, "resources/register", {"uri": "file:///gone", "content": "x"}))
        rid = registered["result"]["id"]
        await send(engine, rpc(2, "resources/subscribe", {"id": rid}))
        await send(engine, rpc(3, "resources/unregister", {"uri": "file:///gone"}))

        def updates():
            return [f for f in frames if f["method"] == "notifications/resources/updated"]

        for _ in range(50):
            if updates():
                break
            await asyncio.sleep(0.01)

        kinds = [e["kind"] for f in updates() for e in f["params"]["events"]]
        assert kinds == ["removed"]
        assert updates()[0]["params"]["id"] == rid
