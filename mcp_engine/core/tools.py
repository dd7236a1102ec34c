"""Built-in tool handlers installed into every engine."""

import asyncio
import json
from typing import Callable, Dict, List, Optional

from ..execution import ExecutionContext
from ..registry import ToolConfig


def echo(ctx: ExecutionContext) -> bytes:
    """Identity tool."""
    return ctx.input


async def stream_echo(ctx: ExecutionContext) -> bytes:
    """Copy streamed input to the output channel until the input closes."""
    received = bytearray()
    while True:
        chunk = await ctx.read_input()
        if chunk is None:
            break
        received.extend(chunk)
        await ctx.write(chunk)
    return bytes(received)


async def countdown(ctx: ExecutionContext) -> bytes:
    """Counts down from ``{"steps": n, "interval": s}``, reporting progress.

    Checks for cancellation between steps, which makes it the reference
    long-running tool.
    """
    options = json.loads(ctx.input or b"{}")
    steps = int(options.get("steps", 10))
    interval = float(options.get("interval", 0.1))

    for step in range(steps):
        await ctx.checkpoint()
        await ctx.write(f"{steps - step}\n".encode())
        ctx.report_progress(100.0 * (step + 1) / steps, f"step {step + 1}/{steps}")
        await asyncio.sleep(interval)
    return b"done"


TOOL_CATALOG: Dict[str, Callable] = {
    "echo": echo,
    "stream_echo": stream_echo,
    "countdown": countdown,
}


def builtin_tools(names: Optional[List[str]] = None) -> List[ToolConfig]:
    """Registration configs for the built-in tools (all of them by default)."""
    configs = [
        ToolConfig(name="echo", handler=echo, description="Returns its input unchanged"),
        ToolConfig(
            name="stream_echo",
            handler=stream_echo,
            description="Streams its input back as it arrives",
            streaming=True,
            accepts_input=True,
        ),
        ToolConfig(
            name="countdown",
            handler=countdown,
            description="Counts down, reporting progress",
            input_schema=json.dumps(
                {
                    "type": "object",
                    "properties": {
                        "steps": {"type": "integer"},
                        "interval": {"type": "number"},
                    },
                }
            ),
            streaming=True,
            supports_progress=True,
        ),
    ]
    if names is None:
        return configs
    return [config for config in configs if config.name in names]
