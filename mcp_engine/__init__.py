"""MCP Engine: registry, execution, dispatch, client sessions and proxy for the context protocol."""

__version__ = "1.0.0"
