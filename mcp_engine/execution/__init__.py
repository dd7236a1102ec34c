"""Tool execution: state machine, streams and the engine driving them."""

from .engine import ExecutionEngine
from .execution import (
    TERMINAL_STATES,
    Execution,
    ExecutionContext,
    ExecutionState,
    InvalidTransitionError,
    Progress,
)
from .retention import ResultRetention
from .streams import ByteChannel, ChannelClosedError, ChunkTransform

__all__ = [
    "ExecutionEngine",
    "Execution",
    "ExecutionContext",
    "ExecutionState",
    "TERMINAL_STATES",
    "InvalidTransitionError",
    "Progress",
    "ResultRetention",
    "ByteChannel",
    "ChannelClosedError",
    "ChunkTransform",
]
