"""Registry entry and registration models."""

from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class EntryKind(str, Enum):
    RESOURCE = "resource"
    TOOL = "tool"
    PROMPT = "prompt"

    @property
    def prefix(self) -> str:
        return {"resource": "R", "tool": "T", "prompt": "P"}[self.value]

    @property
    def namespace(self) -> str:
        return f"{self.value}s"


class ResourceEntry(BaseModel):
    kind: EntryKind = EntryKind.RESOURCE
    id: str
    uri: str
    name: str
    description: Optional[str] = None
    mime_type: str = "application/octet-stream"
    size: int = 0
    metadata: Optional[Dict[str, Any]] = None
    last_modified: Optional[datetime] = None


class ToolEntry(BaseModel):
    kind: EntryKind = EntryKind.TOOL
    id: str
    name: str
    description: Optional[str] = None
    input_schema: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    streaming: bool = False
    accepts_input: bool = False
    supports_progress: bool = False


class PromptArgument(BaseModel):
    name: str
    description: Optional[str] = None
    required: bool = False


class PromptEntry(BaseModel):
    kind: EntryKind = EntryKind.PROMPT
    id: str
    name: str
    description: Optional[str] = None
    content_type: str = "text/plain"
    arguments: List[PromptArgument] = Field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None


Entry = Union[ResourceEntry, ToolEntry, PromptEntry]


class ResourceConfig(BaseModel):
    uri: str
    name: Optional[str] = None
    description: Optional[str] = None
    mime_type: str = "application/octet-stream"
    content: bytes = b""
    metadata: Optional[Dict[str, Any]] = None


class ToolConfig(BaseModel):
    # handler(ctx) -> bytes | None, sync or async
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    handler: Callable[..., Any]
    description: Optional[str] = None
    input_schema: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    streaming: bool = False
    accepts_input: bool = False
    supports_progress: bool = False


class PromptConfig(BaseModel):
    name: str
    template: str
    description: Optional[str] = None
    content_type: str = "text/plain"
    arguments: List[PromptArgument] = Field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None


EntryConfig = Union[ResourceConfig, ToolConfig, PromptConfig]

CONFIG_TYPES = {
    EntryKind.RESOURCE: ResourceConfig,
    EntryKind.TOOL: ToolConfig,
    EntryKind.PROMPT: PromptConfig,
}
