"""Execution engine: runs tool invocations with cooperative cancellation."""

import asyncio
import inspect
import itertools
import logging
from typing import Any, Dict, List, Optional

from ..errors import (
    ExecutionCancelled,
    InternalError,
    InvalidParamsError,
    ProtocolError,
    RequestTimeoutError,
)
from ..registry import Registry, ToolCapability
from .execution import Execution, ExecutionContext, ExecutionState, InvalidTransitionError
from .retention import ResultRetention
from .streams import ChunkTransform

logger = logging.getLogger(__name__)


class ExecutionEngine:
    """Owns every Execution and the task driving it.

    Cancellation is an intent observed by the handler at its next
    checkpoint. ``wait`` is bounded by the operation timeout; when a cancel
    is pending and the handler never reaches a checkpoint, the handler's
    task is cancelled so its ``finally`` blocks release open streams.
    """

    def __init__(
        self,
        registry: Registry,
        operation_timeout: float = 30.0,
        result_retention: float = 300.0,
        cancel_poll_interval: float = 0.05,
        max_buffered_chunks: int = 0,
        collect_every: int = 100,
    ):
        self.registry = registry
        self.operation_timeout = operation_timeout
        self.cancel_poll_interval = cancel_poll_interval
        self.max_buffered_chunks = max_buffered_chunks
        self.retention = ResultRetention(ttl=result_retention)
        self._collect_every = collect_every
        self._executions: Dict[str, Execution] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._ids = itertools.count(1)
        self.started = 0
        self.completed = 0
        self.failed = 0
        self.cancelled = 0

    async def execute(
        self,
        tool_key: str,
        input_data: bytes = b"",
        *,
        transform: Optional[ChunkTransform] = None,
    ) -> Execution:
        """Accept an invocation; the returned Execution starts out Pending."""
        tool, capability = self.registry.get_tool(tool_key)

        if self.retention.should_collect(self._collect_every):
            self.reap()

        execution = Execution(
            f"E{next(self._ids)}",
            tool.id,
            tool.name,
            input_data,
            accepts_input=tool.accepts_input,
            supports_progress=tool.supports_progress,
            transform=transform,
            max_chunks=self.max_buffered_chunks,
        )
        self._executions[execution.id] = execution
        self._tasks[execution.id] = asyncio.create_task(
            self._run(execution, capability), name=f"execution_{execution.id}"
        )
        self.started += 1
        logger.info(f"Accepted execution {execution.id} of tool {tool.name}")
        return execution

    async def run(
        self, tool_key: str, input_data: bytes = b"", timeout: Optional[float] = None
    ) -> bytes:
        """Execute and wait; returns the result or raises the execution's error."""
        execution = await self.execute(tool_key, input_data)
        execution = await self.wait(execution.id, timeout)
        return execution.outcome()

    def get(self, execution_id: str) -> Execution:
        """Look up an execution by id; unknown ids are invalid params."""
        execution = self._executions.get(execution_id)
        if execution is None:
            raise InvalidParamsError(f"Execution not found: {execution_id}")
        return execution

    def list(self) -> List[Execution]:
        """Every execution not yet reclaimed."""
        return list(self._executions.values())

    async def wait(self, execution_id: str, timeout: Optional[float] = None) -> Execution:
        """Return once the execution is terminal, within ``timeout`` seconds."""
        execution = self.get(execution_id)
        timeout = self.operation_timeout if timeout is None else timeout

        if not await execution.wait_done(timeout):
            if not execution.cancel_requested:
                raise RequestTimeoutError(
                    f"Execution {execution_id} did not finish within {timeout}s"
                )
            await self._force_cancel(execution)

        self.retention.mark_retrieved(execution_id)
        return execution

    async def cancel(self, execution_id: str, wait: bool = False) -> Execution:
        """Request cancellation; repeated calls have the same effect as one."""
        execution = self.get(execution_id)
        if execution.request_cancel():
            logger.info(f"Cancellation requested for execution {execution_id}")
        if wait:
            return await self.wait(execution_id)
        return execution

    def pause(self, execution_id: str) -> Execution:
        """Pause a running execution at its next checkpoint."""
        execution = self.get(execution_id)
        try:
            execution.pause()
        except InvalidTransitionError as e:
            raise InvalidParamsError(str(e))
        return execution

    def resume(self, execution_id: str) -> Execution:
        """Resume a paused execution."""
        execution = self.get(execution_id)
        try:
            execution.resume()
        except InvalidTransitionError as e:
            raise InvalidParamsError(str(e))
        return execution

    def reap(self) -> List[str]:
        """Drop finished executions whose retention window is over."""
        reclaimed = []
        for execution_id in self.retention.collect():
            execution = self._executions.get(execution_id)
            if execution is not None and execution.done:
                del self._executions[execution_id]
                reclaimed.append(execution_id)
        return reclaimed

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Cancel every unfinished execution and wait for it to settle."""
        running = [e for e in self._executions.values() if not e.done]
        for execution in running:
            execution.request_cancel()
        if running:
            await asyncio.gather(
                *(self.wait(e.id, timeout) for e in running), return_exceptions=True
            )
        logger.info(f"Execution engine stopped ({len(running)} executions cancelled)")

    def get_stats(self) -> Dict[str, Any]:
        """Execution counters plus the retention window occupancy."""
        active = sum(1 for e in self._executions.values() if not e.done)
        return {
            "started": self.started,
            "completed": self.completed,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "active": active,
            "retention": self.retention.get_stats(),
        }

    async def _run(self, execution: Execution, capability: ToolCapability) -> None:
        """Drive one execution from Pending to a terminal state."""
        await asyncio.sleep(0)
        if execution.done:
            # Cancelled while still pending.
            self._on_finished(execution)
            return

        execution.transition(ExecutionState.RUNNING)
        context = ExecutionContext(execution, self.cancel_poll_interval)

        try:
            result = capability.handler(context)
            if inspect.isawaitable(result):
                result = await result
            execution.finish(ExecutionState.COMPLETED, result=_as_bytes(result))
        except ExecutionCancelled:
            execution.finish(ExecutionState.CANCELLED)
        except asyncio.CancelledError:
            execution.finish(ExecutionState.CANCELLED)
            self._on_finished(execution)
            raise
        except ProtocolError as e:
            execution.finish(ExecutionState.FAILED, error=e)
        except Exception as e:
            logger.error(f"Tool {execution.tool_name} failed in {execution.id}: {e}", exc_info=True)
            execution.finish(ExecutionState.FAILED, error=InternalError(f"Tool error: {e}"))

        self._on_finished(execution)

    async def _force_cancel(self, execution: Execution) -> None:
        """Cancel the handler's task after it ignored a cancel request."""
        task = self._tasks.get(execution.id)
        logger.warning(
            f"Execution {execution.id} ignored cancellation for "
            f"{self.operation_timeout}s, cancelling its task"
        )
        if task is not None and not task.done():
            task.cancel()
            # A handler that swallows CancelledError must not hang the caller.
            await asyncio.wait({task}, timeout=max(self.cancel_poll_interval, 0.1))
        execution.finish(ExecutionState.CANCELLED)
        self._on_finished(execution)

    def _on_finished(self, execution: Execution) -> None:
        """Count the outcome and start the retention window."""
        if execution.id not in self._tasks:
            return
        del self._tasks[execution.id]
        if execution.state == ExecutionState.COMPLETED:
            self.completed += 1
        elif execution.state == ExecutionState.FAILED:
            self.failed += 1
        else:
            self.cancelled += 1
        self.retention.track(execution.id)
        logger.info(f"Execution {execution.id} finished: {execution.state.value}")


def _as_bytes(result) -> bytes:
    if result is None:
        return b""
    if isinstance(result, (bytes, bytearray)):
        return bytes(result)
    if isinstance(result, str):
        return result.encode("utf-8")
    raise InternalError(f"Tool returned {type(result).__name__}, expected bytes")
