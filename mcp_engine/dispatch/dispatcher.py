"""Request dispatcher: decodes envelopes, routes methods, encodes responses."""

import asyncio
import logging
from collections import Counter
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

import mcp.types as types

from ..errors import (
    InternalError,
    InvalidParamsError,
    MethodNotFoundError,
    ProtocolError,
)
from ..events import ReadinessHandle
from ..execution import ExecutionEngine, ExecutionState
from ..registry import EntryKind, Registry
from . import codec
from .codec import Envelope, InvalidEnvelope
from .payload import (
    config_from_params,
    decode_bytes,
    encode_bytes,
    entry_to_dict,
    optional_number,
    require,
)

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[Any]]
NotificationSink = Callable[[bytes], Awaitable[None]]

_KEY_PARAMS = {
    EntryKind.RESOURCE: ("id", "uri"),
    EntryKind.TOOL: ("id", "name"),
    EntryKind.PROMPT: ("id", "name"),
}


class Dispatcher:
    """Routes decoded requests to the registry and execution engine.

    Items of a batch run concurrently; responses keep submission order and
    a failing item never prevents its siblings from being answered.
    """

    def __init__(
        self,
        registry: Registry,
        engine: ExecutionEngine,
        server_info: Optional[Dict[str, Any]] = None,
        tool_catalog: Optional[Mapping[str, Callable[..., Any]]] = None,
        max_concurrent_requests: int = 100,
        default_chunk_size: int = 4096,
    ):
        self.registry = registry
        self.engine = engine
        self.server_info = server_info or {"name": "mcp-engine", "version": "1.0.0"}
        self.tool_catalog: Dict[str, Callable[..., Any]] = dict(tool_catalog or {})
        self.default_chunk_size = default_chunk_size
        self._semaphore = asyncio.Semaphore(max_concurrent_requests)
        self._sink: Optional[NotificationSink] = None
        self._pumps: Dict[str, asyncio.Task] = {}
        self._started = False

        self.request_count = 0
        self.batch_count = 0
        self.error_count = 0
        self.notifications_sent = 0
        self.errors_by_kind: Counter = Counter()

        self._methods: Dict[str, Handler] = {
            "initialize": self._initialize,
            "ping": self._ping,
            "server/stats": self._server_stats,
            "resources/list": self._list_entries(EntryKind.RESOURCE),
            "resources/get": self._get_entry(EntryKind.RESOURCE),
            "resources/register": self._register_entry(EntryKind.RESOURCE),
            "resources/update": self._update_entry(EntryKind.RESOURCE),
            "resources/unregister": self._unregister_entry(EntryKind.RESOURCE),
            "resources/read": self._read_resource,
            "resources/readChunk": self._read_resource_chunk,
            "resources/subscribe": self._subscribe_resource,
            "resources/unsubscribe": self._unsubscribe_resource,
            "tools/list": self._list_entries(EntryKind.TOOL),
            "tools/get": self._get_entry(EntryKind.TOOL),
            "tools/register": self._register_entry(EntryKind.TOOL),
            "tools/update": self._update_entry(EntryKind.TOOL),
            "tools/unregister": self._unregister_entry(EntryKind.TOOL),
            "tools/validate": self._validate_tool,
            "tools/call": self._call_tool,
            "tools/execute": self._execute_tool,
            "executions/get": self._get_execution,
            "executions/wait": self._wait_execution,
            "executions/cancel": self._cancel_execution,
            "executions/pause": self._pause_execution,
            "executions/resume": self._resume_execution,
            "executions/read": self._read_execution,
            "executions/write": self._write_execution,
            "executions/closeInput": self._close_execution_input,
            "prompts/list": self._list_entries(EntryKind.PROMPT),
            "prompts/get": self._get_entry(EntryKind.PROMPT),
            "prompts/register": self._register_entry(EntryKind.PROMPT),
            "prompts/update": self._update_entry(EntryKind.PROMPT),
            "prompts/unregister": self._unregister_entry(EntryKind.PROMPT),
            "prompts/render": self._render_prompt,
        }

    @property
    def methods(self) -> List[str]:
        """Every method name this dispatcher answers."""
        return sorted(self._methods)

    # Lifecycle

    async def start(self) -> None:
        """Start pumping registry list changes to the notification sink."""
        if self._started:
            return
        self._started = True
        for kind in EntryKind:
            handle = self.registry.subscribe_changes(kind)
            self._start_pump(
                f"list:{kind.value}",
                handle,
                f"notifications/{kind.namespace}/list_changed",
                {},
            )

    async def stop(self) -> None:
        """Cancel the notification pumps."""
        pumps = list(self._pumps.values())
        self._pumps.clear()
        for task in pumps:
            task.cancel()
        if pumps:
            await asyncio.gather(*pumps, return_exceptions=True)
        self._started = False

    def attach(self, sink: Optional[NotificationSink]) -> None:
        """Route outbound notification frames to ``sink`` (None detaches)."""
        self._sink = sink

    # Entry points

    async def handle(self, data: Union[bytes, str]) -> Optional[bytes]:
        """Answer one encoded message; None when there is nothing to send back."""
        try:
            message = codec.decode(data)
        except ProtocolError as e:
            self._count_error(e)
            logger.warning(f"Rejected undecodable message: {e.message}")
            return codec.dumps(codec.failure(None, e))

        if isinstance(message, codec.Batch):
            responses = await self.dispatch_batch(message.items)
            return codec.dumps(responses) if responses else None

        response = await self.dispatch(message)
        return codec.dumps(response) if response is not None else None

    async def dispatch_batch(
        self, items: List[Union[Envelope, InvalidEnvelope]]
    ) -> List[Dict[str, Any]]:
        """Answer a batch with responses in submission order, skipping notifications."""
        self.batch_count += 1
        results = await asyncio.gather(
            *(self.dispatch(item) for item in items), return_exceptions=True
        )

        responses = []
        for item, result in zip(items, results):
            if isinstance(result, BaseException):
                logger.error(f"Batch item {item.id} crashed: {result!r}")
                error = InternalError(f"Internal error: {result}")
                self._count_error(error)
                result = codec.failure(item.id, error)
            if result is not None:
                responses.append(result)
        return responses

    async def dispatch(self, item: Union[Envelope, InvalidEnvelope]) -> Optional[Dict[str, Any]]:
        """Answer a single decoded item; notifications yield None."""
        if isinstance(item, InvalidEnvelope):
            self._count_error(item.error)
            return codec.failure(item.id, item.error)

        try:
            result = await self.call(item.method, item.params)
            response = codec.success(item.id, result)
        except ProtocolError as e:
            self._count_error(e)
            response = codec.failure(item.id, e)
        except Exception as e:
            logger.error(f"Handler for {item.method} failed: {e}", exc_info=True)
            error = InternalError(f"Internal error: {e}")
            self._count_error(error)
            response = codec.failure(item.id, error)

        return None if item.is_notification else response

    async def call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Invoke a method in-process, raising ProtocolError on failure."""
        handler = self._methods.get(method)
        if handler is None:
            raise MethodNotFoundError(f"Method not found: {method}")

        self.request_count += 1
        async with self._semaphore:
            return await handler(dict(params or {}))

    def get_stats(self) -> Dict[str, Any]:
        """Request, error and notification counters."""
        return {
            "requests": self.request_count,
            "batches": self.batch_count,
            "errors": self.error_count,
            "notifications_sent": self.notifications_sent,
            "errors_by_kind": dict(self.errors_by_kind),
            "subscriptions": sum(1 for task in self._pumps.values() if not task.done()),
        }

    # Server methods

    async def _initialize(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Handshake: server info, capabilities and supported methods."""
        client = params.get("clientInfo") or {}
        logger.info(f"Initialize from client: {client.get('name', 'unknown')}")
        return {
            "protocolVersion": types.LATEST_PROTOCOL_VERSION,
            "serverInfo": dict(self.server_info),
            "capabilities": {
                "resources": {"subscribe": True, "listChanged": True},
                "tools": {"listChanged": True, "streaming": True},
                "prompts": {"listChanged": True},
            },
            "methods": self.methods,
        }

    async def _ping(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {}

    async def _server_stats(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "server": dict(self.server_info),
            "dispatcher": self.get_stats(),
            "registry": self.registry.stats(),
            "executions": self.engine.get_stats(),
        }

    # Registry methods

    def _list_entries(self, kind: EntryKind) -> Handler:
        async def handler(params: Dict[str, Any]) -> Dict[str, Any]:
            return {kind.namespace: [entry_to_dict(e) for e in self.registry.list(kind)]}

        return handler

    def _get_entry(self, kind: EntryKind) -> Handler:
        async def handler(params: Dict[str, Any]) -> Dict[str, Any]:
            key = require(params, *_KEY_PARAMS[kind])
            return {kind.value: entry_to_dict(self.registry.get(kind, key))}

        return handler

    def _register_entry(self, kind: EntryKind) -> Handler:
        async def handler(params: Dict[str, Any]) -> Dict[str, Any]:
            config = config_from_params(kind, params, self.tool_catalog)
            entry_id = await self.registry.register(kind, config)
            return {"id": entry_id}

        return handler

    def _update_entry(self, kind: EntryKind) -> Handler:
        async def handler(params: Dict[str, Any]) -> Dict[str, Any]:
            key = require(params, *_KEY_PARAMS[kind])
            current = self.registry.get(kind, key)
            merged = {**current.model_dump(exclude_none=True), **params}
            current_handler = None
            if kind == EntryKind.TOOL:
                current_handler = self.registry.get_tool(key)[1].handler
            if kind == EntryKind.RESOURCE and "content" not in params:
                merged["content"] = encode_bytes(self.registry.read_resource(key)[1])
            if kind == EntryKind.PROMPT and "template" not in params:
                merged["template"] = self.registry.prompt_template(key)
            config = config_from_params(kind, merged, self.tool_catalog, current_handler)
            entry = await self.registry.update(kind, key, config)
            return {kind.value: entry_to_dict(entry)}

        return handler

    def _unregister_entry(self, kind: EntryKind) -> Handler:
        async def handler(params: Dict[str, Any]) -> Dict[str, Any]:
            key = require(params, *_KEY_PARAMS[kind])
            # Entry pumps exit on their own after delivering the final "removed" event.
            await self.registry.unregister(kind, key)
            return {"success": True}

        return handler

    async def _read_resource(self, params: Dict[str, Any]) -> Dict[str, Any]:
        key = require(params, "id", "uri")
        entry, content = self.registry.read_resource(key)
        return {
            "contents": [{"uri": entry.uri, "mimeType": entry.mime_type, **encode_bytes(content)}]
        }

    async def _read_resource_chunk(self, params: Dict[str, Any]) -> Dict[str, Any]:
        key = require(params, "id", "uri")
        chunk_size = params.get("chunkSize", self.default_chunk_size)
        offset = params.get("offset", 0)
        if not isinstance(chunk_size, int) or not isinstance(offset, int):
            raise InvalidParamsError("chunkSize and offset must be integers")

        reader = self.registry.open_reader(key, chunk_size, offset)
        chunk = reader.read_chunk()
        return {
            "chunk": encode_bytes(chunk) if chunk is not None else None,
            "offset": reader.offset,
            "eof": reader.exhausted,
        }

    async def _subscribe_resource(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Pump the resource's update events out as notifications."""
        key = require(params, "id", "uri")
        entry = self.registry.get(EntryKind.RESOURCE, key)
        handle = self.registry.subscribe(EntryKind.RESOURCE, entry.id)
        self._start_pump(
            f"entry:{entry.id}",
            handle,
            "notifications/resources/updated",
            {"id": entry.id, "uri": entry.uri},
        )
        return {"subscribed": entry.id}

    async def _unsubscribe_resource(self, params: Dict[str, Any]) -> Dict[str, Any]:
        key = require(params, "id", "uri")
        entry = self.registry.get(EntryKind.RESOURCE, key)
        return {"unsubscribed": self._stop_pump(f"entry:{entry.id}")}

    # Tool and execution methods

    async def _validate_tool(self, params: Dict[str, Any]) -> Dict[str, Any]:
        key = require(params, "id", "name")
        problems = self.registry.validate_tool_input(key, decode_bytes(params.get("input")))
        return {"valid": not problems, "errors": problems}

    async def _call_tool(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Execute a tool and wait for its result."""
        key = require(params, "id", "name")
        timeout = optional_number(params, "timeout")
        execution = await self.engine.execute(key, decode_bytes(params.get("input")))
        execution = await self.engine.wait(execution.id, timeout)
        if execution.state == ExecutionState.FAILED:
            raise execution.error or InternalError(f"Execution {execution.id} failed")
        return self._execution_result(execution)

    async def _execute_tool(self, params: Dict[str, Any]) -> Dict[str, Any]:
        key = require(params, "id", "name")
        execution = await self.engine.execute(key, decode_bytes(params.get("input")))
        return execution.snapshot()

    async def _get_execution(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return self.engine.get(require(params, "executionId")).snapshot()

    async def _wait_execution(self, params: Dict[str, Any]) -> Dict[str, Any]:
        execution_id = require(params, "executionId")
        execution = await self.engine.wait(execution_id, optional_number(params, "timeout"))
        if execution.state == ExecutionState.FAILED:
            raise execution.error or InternalError(f"Execution {execution_id} failed")
        return self._execution_result(execution)

    async def _cancel_execution(self, params: Dict[str, Any]) -> Dict[str, Any]:
        execution_id = require(params, "executionId")
        execution = await self.engine.cancel(execution_id, wait=bool(params.get("wait", False)))
        return execution.snapshot()

    async def _pause_execution(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return self.engine.pause(require(params, "executionId")).snapshot()

    async def _resume_execution(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return self.engine.resume(require(params, "executionId")).snapshot()

    async def _read_execution(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Next chunk from an execution's output or error channel, or eof."""
        execution = self.engine.get(require(params, "executionId"))
        channel_name = params.get("channel", "output")
        if channel_name == "output":
            channel = execution.output
        elif channel_name == "error":
            channel = execution.errors
        else:
            raise InvalidParamsError(f"Unknown channel: {channel_name}")
        if channel is None:
            raise InvalidParamsError(f"Execution {execution.id} has no {channel_name} channel")

        timeout = optional_number(params, "timeout")
        try:
            chunk = await channel.read_chunk(
                timeout if timeout is not None else self.engine.operation_timeout
            )
        except asyncio.TimeoutError:
            return {"chunk": None, "eof": False}
        return {
            "chunk": encode_bytes(chunk) if chunk is not None else None,
            "eof": chunk is None,
        }

    async def _write_execution(self, params: Dict[str, Any]) -> Dict[str, Any]:
        execution = self.engine.get(require(params, "executionId"))
        if execution.stdin is None:
            raise InvalidParamsError(f"Tool {execution.tool_name} does not accept streamed input")
        if execution.stdin.closed:
            raise InvalidParamsError(f"Input of execution {execution.id} is closed")
        data = decode_bytes(params.get("data"), "data")
        await execution.stdin.write(data)
        return {"written": len(data)}

    async def _close_execution_input(self, params: Dict[str, Any]) -> Dict[str, Any]:
        execution = self.engine.get(require(params, "executionId"))
        if execution.stdin is not None:
            execution.stdin.close()
        return {"closed": execution.stdin is not None}

    @staticmethod
    def _execution_result(execution) -> Dict[str, Any]:
        result = execution.snapshot()
        if execution.state == ExecutionState.COMPLETED:
            result["output"] = encode_bytes(execution.result or b"")
        return result

    # Prompt methods

    async def _render_prompt(self, params: Dict[str, Any]) -> Dict[str, Any]:
        key = require(params, "id", "name")
        arguments = params.get("arguments") or {}
        if not isinstance(arguments, dict):
            raise InvalidParamsError("arguments must be an object")
        entry = self.registry.get(EntryKind.PROMPT, key)
        return {
            "content": self.registry.render_prompt(key, arguments),
            "contentType": entry.content_type,
        }

    # Notifications

    def _start_pump(
        self, key: str, handle: ReadinessHandle, method: str, params: Dict[str, Any]
    ) -> None:
        if key in self._pumps and not self._pumps[key].done():
            return
        self._pumps[key] = asyncio.create_task(
            self._pump(handle, method, params), name=f"pump_{key}"
        )

    def _stop_pump(self, key: str) -> bool:
        task = self._pumps.pop(key, None)
        if task is None:
            return False
        task.cancel()
        return True

    async def _pump(self, handle: ReadinessHandle, method: str, params: Dict[str, Any]) -> None:
        """Coalesce each drained batch of events into one notification frame."""
        while True:
            ready = await handle.wait()
            events = handle.drain()
            if events:
                await self._emit(
                    method,
                    {**params, "events": [{"kind": e.kind, **e.data} for e in events]},
                )
            if not ready and handle.closed:
                return

    async def _emit(self, method: str, params: Dict[str, Any]) -> None:
        """Send one notification frame to the attached sink, if any."""
        if self._sink is None:
            logger.debug(f"No notification sink attached, dropping {method}")
            return
        try:
            await self._sink(codec.dumps(codec.notification(method, params)))
            self.notifications_sent += 1
        except Exception as e:
            logger.warning(f"Failed to deliver {method} notification: {e}")

    def _count_error(self, error: ProtocolError) -> None:
        self.error_count += 1
        self.errors_by_kind[error.kind.value] += 1
