"""Tests for the resource/tool/prompt registry."""

import pytest

from mcp_engine.errors import (
    InvalidParamsError,
    PromptNotFoundError,
    ResourceNotFoundError,
    ToolNotFoundError,
)
from mcp_engine.registry import (
    ChunkReader,
    EntryKind,
    PromptArgument,
    PromptConfig,
    ResourceConfig,
    ToolConfig,
)


def resource(uri="file:///a", content=b"hi", **kwargs):
    return ResourceConfig(uri=uri, content=content, **kwargs)


class TestRegistration:
    @pytest.mark.asyncio
    async def test_register_read_unregister(self, registry):
        rid = await registry.register(EntryKind.RESOURCE, resource(mime_type="text/plain"))
        assert rid == "R1"

        entry, content = registry.read_resource(rid)
        assert content == b"hi"
        assert entry.uri == "file:///a"
        assert entry.size == 2

        assert await registry.unregister(EntryKind.RESOURCE, rid)
        with pytest.raises(ResourceNotFoundError):
            registry.read_resource(rid)

    @pytest.mark.asyncio
    async def test_ids_are_never_reused(self, registry):
        first = await registry.register(EntryKind.RESOURCE, resource("file:///a"))
        await registry.unregister(EntryKind.RESOURCE, first)
        second = await registry.register(EntryKind.RESOURCE, resource("file:///a"))
        assert (first, second) == ("R1", "R2")

    @pytest.mark.asyncio
    async def test_namespaces_have_their_own_prefix(self, registry):
        tid = await registry.register(EntryKind.TOOL, ToolConfig(name="t", handler=lambda ctx: b""))
        pid = await registry.register(EntryKind.PROMPT, PromptConfig(name="p", template="x"))
        assert tid == "T1"
        assert pid == "P1"
        assert registry.stats() == {"resources": 0, "tools": 1, "prompts": 1}

    @pytest.mark.asyncio
    async def test_duplicate_key_rejected(self, registry):
        await registry.register(EntryKind.RESOURCE, resource())
        with pytest.raises(InvalidParamsError):
            await registry.register(EntryKind.RESOURCE, resource())
        assert registry.count(EntryKind.RESOURCE) == 1

    @pytest.mark.asyncio
    async def test_wrong_config_type_rejected(self, registry):
        with pytest.raises(InvalidParamsError):
            await registry.register(EntryKind.TOOL, resource())

    @pytest.mark.asyncio
    async def test_lookup_by_key(self, registry):
        await registry.register(EntryKind.TOOL, ToolConfig(name="echo", handler=lambda ctx: ctx.input))
        assert registry.get(EntryKind.TOOL, "echo").id == "T1"
        assert registry.contains(EntryKind.TOOL, "T1")
        assert not registry.contains(EntryKind.TOOL, "missing")
        with pytest.raises(ToolNotFoundError):
            registry.get_tool("missing")

    @pytest.mark.asyncio
    async def test_get_returns_a_copy(self, registry):
        rid = await registry.register(EntryKind.RESOURCE, resource(metadata={"k": "v"}))
        snapshot = registry.get(EntryKind.RESOURCE, rid)
        snapshot.metadata["k"] = "changed"
        assert registry.get(EntryKind.RESOURCE, rid).metadata == {"k": "v"}

    @pytest.mark.asyncio
    async def test_closed_registry_rejects_mutations(self, registry):
        registry.close()
        assert registry.closed
        with pytest.raises(RuntimeError):
            await registry.register(EntryKind.RESOURCE, resource())


class TestUpdates:
    @pytest.mark.asyncio
    async def test_update_notifies_subscribers(self, registry):
        rid = await registry.register(EntryKind.RESOURCE, resource())
        handle = registry.subscribe(EntryKind.RESOURCE, rid)

        await registry.update(EntryKind.RESOURCE, rid, resource(content=b"new"))

        assert handle.is_ready()
        assert [e.kind for e in handle.drain()] == ["content-changed"]
        assert registry.read_resource(rid)[1] == b"new"

    @pytest.mark.asyncio
    async def test_update_can_rename_key(self, registry):
        rid = await registry.register(EntryKind.RESOURCE, resource("file:///a"))
        await registry.update(EntryKind.RESOURCE, rid, resource("file:///b"))
        assert registry.get(EntryKind.RESOURCE, "file:///b").id == rid
        assert not registry.contains(EntryKind.RESOURCE, "file:///a")

    @pytest.mark.asyncio
    async def test_unregister_closes_subscription(self, registry):
        rid = await registry.register(EntryKind.RESOURCE, resource())
        handle = registry.subscribe(EntryKind.RESOURCE, rid)

        await registry.unregister(EntryKind.RESOURCE, rid)

        assert handle.closed
        assert not handle.is_ready()
        assert [e.kind for e in handle.drain()] == ["removed"]

    @pytest.mark.asyncio
    async def test_list_changes_are_published(self, registry):
        changes = registry.subscribe_changes(EntryKind.TOOL)
        tid = await registry.register(EntryKind.TOOL, ToolConfig(name="t", handler=lambda ctx: b""))
        await registry.unregister(EntryKind.TOOL, tid)
        assert [e.kind for e in changes.drain()] == ["registered", "unregistered"]


class TestCapabilities:
    def test_chunk_reader_splits_content(self):
        reader = ChunkReader(bytes(150), chunk_size=64)
        sizes = []
        while True:
            chunk = reader.read_chunk()
            if chunk is None:
                break
            sizes.append(len(chunk))
        assert sizes == [64, 64, 22]
        assert reader.exhausted
        assert reader.read_chunk() is None

    def test_chunk_reader_rejects_bad_arguments(self):
        with pytest.raises(InvalidParamsError):
            ChunkReader(b"abc", chunk_size=0)
        with pytest.raises(InvalidParamsError):
            ChunkReader(b"abc", chunk_size=1, offset=4)

    @pytest.mark.asyncio
    async def test_empty_resource_reads_nothing(self, registry):
        rid = await registry.register(EntryKind.RESOURCE, resource(content=b""))
        assert registry.open_reader(rid, 64).read_chunk() is None

    @pytest.mark.asyncio
    async def test_tool_input_validation(self, registry):
        schema = '{"type": "object", "required": ["x"], "properties": {"x": {"type": "integer"}}}'
        await registry.register(
            EntryKind.TOOL, ToolConfig(name="t", handler=lambda ctx: b"", input_schema=schema)
        )
        assert registry.validate_tool_input("t", b'{"x": 1}') == []
        assert registry.validate_tool_input("t", b'{"x": "one"}')
        assert registry.validate_tool_input("t", b"{}")
        assert registry.validate_tool_input("t", b"not json")

    @pytest.mark.asyncio
    async def test_prompt_rendering(self, registry):
        config = PromptConfig(
            name="greet",
            template="Hello {who}{suffix}",
            arguments=[
                PromptArgument(name="who", required=True),
                PromptArgument(name="suffix"),
            ],
        )
        await registry.register(EntryKind.PROMPT, config)

        assert registry.render_prompt("greet", {"who": "Ada"}) == "Hello Ada"
        assert registry.render_prompt("greet", {"who": "Ada", "suffix": "!"}) == "Hello Ada!"
        with pytest.raises(InvalidParamsError):
            registry.render_prompt("greet", {})
        with pytest.raises(PromptNotFoundError):
            registry.render_prompt("missing")

    @pytest.mark.asyncio
    async def test_malformed_template_is_invalid_params(self, registry):
        await registry.register(EntryKind.PROMPT, PromptConfig(name="stray", template="Broken {"))
        await registry.register(EntryKind.PROMPT, PromptConfig(name="positional", template="Item {0}"))

        with pytest.raises(InvalidParamsError):
            registry.render_prompt("stray")
        with pytest.raises(InvalidParamsError):
            registry.render_prompt("positional", {"0": "x"})
