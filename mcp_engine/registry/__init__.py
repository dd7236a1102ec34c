"""Registry of resources, tools and prompts."""

from .capabilities import ChunkReader, PromptCapability, ResourceCapability, ToolCapability
from .models import (
    Entry,
    EntryKind,
    PromptArgument,
    PromptConfig,
    PromptEntry,
    ResourceConfig,
    ResourceEntry,
    ToolConfig,
    ToolEntry,
)
from .registry import Registry

__all__ = [
    "Registry",
    "Entry",
    "EntryKind",
    "ResourceEntry",
    "ToolEntry",
    "PromptEntry",
    "PromptArgument",
    "ResourceConfig",
    "ToolConfig",
    "PromptConfig",
    "ChunkReader",
    "ResourceCapability",
    "ToolCapability",
    "PromptCapability",
]
