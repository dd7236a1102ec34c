#!/usr/bin/env python3
"""Main entry point for MCP Engine when run as a script."""

import asyncio
import sys

from mcp_engine.core.manager import EngineManager


async def main():
    """Main entry point."""
    config_path = sys.argv[1] if len(sys.argv) > 1 else None

    manager = EngineManager(config_path)
    try:
        await manager.start(watch=config_path is not None)
        await asyncio.Event().wait()
    finally:
        await manager.stop()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutting down MCP Engine...")
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
