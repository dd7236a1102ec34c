"""Execution state machine and the context handed to tool handlers."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from ..errors import ExecutionCancelled, ProtocolError
from ..events import ReadinessHandle, Subscription
from .streams import ByteChannel, ChunkTransform

logger = logging.getLogger(__name__)


class ExecutionState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {ExecutionState.COMPLETED, ExecutionState.FAILED, ExecutionState.CANCELLED}
)

_TRANSITIONS = {
    ExecutionState.PENDING: {
        ExecutionState.RUNNING,
        ExecutionState.FAILED,
        ExecutionState.CANCELLED,
    },
    ExecutionState.RUNNING: {
        ExecutionState.PAUSED,
        ExecutionState.COMPLETED,
        ExecutionState.FAILED,
        ExecutionState.CANCELLED,
    },
    # A handler may return between checkpoints while paused.
    ExecutionState.PAUSED: {
        ExecutionState.RUNNING,
        ExecutionState.COMPLETED,
        ExecutionState.FAILED,
        ExecutionState.CANCELLED,
    },
}


class InvalidTransitionError(RuntimeError):
    pass


@dataclass
class Progress:
    percentage: float
    message: Optional[str] = None
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        """Wire form of the progress report."""
        return {"percentage": self.percentage, "message": self.message}


class Execution:
    """One tool invocation, from acceptance to a terminal state."""

    def __init__(
        self,
        execution_id: str,
        tool_id: str,
        tool_name: str,
        input_data: bytes = b"",
        *,
        accepts_input: bool = False,
        supports_progress: bool = False,
        error_channel: bool = True,
        transform: Optional[ChunkTransform] = None,
        max_chunks: int = 0,
    ):
        self.id = execution_id
        self.tool_id = tool_id
        self.tool_name = tool_name
        self.input = input_data
        self.state = ExecutionState.PENDING
        self.supports_progress = supports_progress
        self.progress: Optional[Progress] = None
        self.result: Optional[bytes] = None
        self.error: Optional[ProtocolError] = None
        self.created_at = time.time()
        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None

        self.output = ByteChannel(f"{execution_id}:output", transform, max_chunks)
        self.stdin = ByteChannel(f"{execution_id}:input", max_chunks=max_chunks) if accepts_input else None
        self.errors = ByteChannel(f"{execution_id}:error", max_chunks=max_chunks) if error_channel else None

        self.subscription = Subscription(execution_id)
        self._cancel_requested = False
        self._signal = asyncio.Event()
        self._done = asyncio.Event()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    @property
    def done(self) -> bool:
        return self.state.terminal

    def transition(self, new_state: ExecutionState) -> None:
        """Move to ``new_state``, publishing the change; illegal moves raise."""
        allowed = _TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise InvalidTransitionError(
                f"Execution {self.id}: {self.state.value} -> {new_state.value} not allowed"
            )

        old_state = self.state
        self.state = new_state
        if new_state == ExecutionState.RUNNING and self.started_at is None:
            self.started_at = time.time()
        self.subscription.publish(
            "state-changed", {"from": old_state.value, "to": new_state.value}
        )
        logger.debug(f"Execution {self.id}: {old_state.value} -> {new_state.value}")

        if new_state.terminal:
            self.finished_at = time.time()
            self._release_channels()
            self._done.set()
        self._signal.set()

    def finish(
        self,
        state: ExecutionState,
        result: Optional[bytes] = None,
        error: Optional[ProtocolError] = None,
    ) -> None:
        """Record the outcome and enter a terminal state; no-op once terminal."""
        if self.done:
            return
        self.result = result
        self.error = error
        self.transition(state)

    def request_cancel(self) -> bool:
        """Record the intent to cancel; returns False if it was already recorded."""
        if self._cancel_requested or self.done:
            return False
        self._cancel_requested = True
        self.subscription.publish("cancel-requested", {})
        if self.state == ExecutionState.PENDING:
            # Nothing has started, so there is no checkpoint to wait for.
            self.finish(ExecutionState.CANCELLED)
        self._signal.set()
        return True

    def pause(self) -> None:
        """Pause a running execution until resumed."""
        self.transition(ExecutionState.PAUSED)

    def resume(self) -> None:
        """Resume a paused execution."""
        self.transition(ExecutionState.RUNNING)

    def report_progress(self, percentage: float, message: Optional[str] = None) -> bool:
        """Record progress; regressions are ignored so reports stay monotonic."""
        if self.done:
            return False
        percentage = max(0.0, min(100.0, float(percentage)))
        if self.progress is not None and percentage < self.progress.percentage:
            logger.debug(
                f"Execution {self.id}: ignoring progress regression "
                f"{self.progress.percentage} -> {percentage}"
            )
            return False
        self.progress = Progress(percentage=percentage, message=message)
        self.subscription.publish("progress", self.progress.to_dict())
        return True

    async def wait_done(self, timeout: Optional[float] = None) -> bool:
        """True once terminal, False if ``timeout`` elapsed first."""
        try:
            await asyncio.wait_for(self._done.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def subscribe(self) -> ReadinessHandle:
        """Readiness handle for state, progress and cancel events."""
        return self.subscription.handle()

    def outcome(self) -> bytes:
        """Result bytes of a completed execution; raises its error otherwise."""
        if self.state == ExecutionState.COMPLETED:
            return self.result or b""
        if self.error is not None:
            raise self.error
        raise RuntimeError(f"Execution {self.id} is {self.state.value}")

    def snapshot(self) -> Dict[str, Any]:
        """Wire form of the execution's current state."""
        return {
            "executionId": self.id,
            "toolId": self.tool_id,
            "tool": self.tool_name,
            "state": self.state.value,
            "cancelRequested": self._cancel_requested,
            "progress": self.progress.to_dict() if self.progress else None,
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
        }

    def _release_channels(self) -> None:
        self.output.close()
        if self.errors is not None:
            self.errors.close()
        if self.stdin is not None:
            self.stdin.close()
        self.subscription.close()

    def __repr__(self) -> str:
        return f"<Execution {self.id} {self.tool_name} {self.state.value}>"


class ExecutionContext:
    """What a tool handler sees of its execution."""

    def __init__(self, execution: Execution, poll_interval: float = 0.05):
        self._execution = execution
        self._poll_interval = poll_interval

    @property
    def execution_id(self) -> str:
        return self._execution.id

    @property
    def input(self) -> bytes:
        return self._execution.input

    @property
    def output(self) -> ByteChannel:
        return self._execution.output

    @property
    def errors(self) -> Optional[ByteChannel]:
        return self._execution.errors

    @property
    def stdin(self) -> Optional[ByteChannel]:
        return self._execution.stdin

    @property
    def cancelled(self) -> bool:
        return self._execution.cancel_requested

    async def checkpoint(self) -> None:
        """Safe point: raises ExecutionCancelled or blocks while paused."""
        execution = self._execution
        while True:
            if execution.cancel_requested:
                raise ExecutionCancelled(execution.id)
            if execution.state != ExecutionState.PAUSED:
                return
            execution._signal.clear()
            try:
                await asyncio.wait_for(execution._signal.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                continue

    def report_progress(self, percentage: float, message: Optional[str] = None) -> bool:
        """Report progress; regressions are ignored."""
        return self._execution.report_progress(percentage, message)

    async def write(self, chunk: bytes) -> None:
        """Emit one output chunk, observing cancellation first."""
        await self.checkpoint()
        await self._execution.output.write(chunk)

    async def write_error(self, chunk: bytes) -> None:
        """Emit a chunk on the side error channel, if the execution has one."""
        if self._execution.errors is not None:
            await self._execution.errors.write(chunk)

    async def read_input(self, timeout: Optional[float] = None) -> Optional[bytes]:
        """Next input chunk, or None at end of input or when the tool takes none."""
        if self._execution.stdin is None:
            return None
        await self.checkpoint()
        return await self._execution.stdin.read_chunk(timeout)
