"""Conversions between wire params and registry/execution objects."""

import base64
import binascii
from typing import Any, Callable, Dict, Mapping, Optional

from pydantic import ValidationError

from ..errors import InvalidParamsError
from ..registry import (
    Entry,
    EntryKind,
    PromptArgument,
    PromptConfig,
    ResourceConfig,
    ToolConfig,
)


def encode_bytes(data: bytes) -> Dict[str, str]:
    """Text when the bytes are valid UTF-8, base64 blob otherwise."""
    try:
        return {"text": data.decode("utf-8")}
    except UnicodeDecodeError:
        return {"blob": base64.b64encode(data).decode("ascii")}


def decode_bytes(value: Any, field_name: str = "input") -> bytes:
    if value is None:
        return b""
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, dict):
        if "text" in value:
            return str(value["text"]).encode("utf-8")
        if "blob" in value:
            try:
                return base64.b64decode(value["blob"], validate=True)
            except (binascii.Error, TypeError) as e:
                raise InvalidParamsError(f"{field_name}: invalid base64 blob: {e}")
    raise InvalidParamsError(f"{field_name} must be a string or a text/blob object")


def entry_to_dict(entry: Entry) -> Dict[str, Any]:
    """JSON-ready form of an entry snapshot."""
    return entry.model_dump(mode="json", exclude_none=True)


def require(params: Mapping[str, Any], *names: str) -> str:
    """First present key among ``names``; used for id-or-name lookups."""
    for name in names:
        value = params.get(name)
        if value is not None:
            if not isinstance(value, str):
                raise InvalidParamsError(f"{name} must be a string")
            return value
    raise InvalidParamsError(f"Missing required parameter: {' or '.join(names)}")


def optional_number(params: Mapping[str, Any], name: str) -> Optional[float]:
    """Non-negative number param, or None when absent."""
    value = params.get(name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise InvalidParamsError(f"{name} must be a non-negative number")
    return float(value)


def config_from_params(
    kind: EntryKind,
    params: Mapping[str, Any],
    tool_catalog: Mapping[str, Callable[..., Any]],
    current_handler: Optional[Callable[..., Any]] = None,
):
    """Build a registration config from request params."""
    try:
        if kind == EntryKind.RESOURCE:
            return ResourceConfig(
                uri=params.get("uri"),
                name=params.get("name"),
                description=params.get("description"),
                mime_type=params.get("mimeType", params.get("mime_type", "application/octet-stream")),
                content=decode_bytes(params.get("content"), "content"),
                metadata=params.get("metadata"),
            )

        if kind == EntryKind.TOOL:
            handler_name = params.get("handler")
            if handler_name is None:
                handler = current_handler
            else:
                handler = tool_catalog.get(handler_name)
                if handler is None:
                    raise InvalidParamsError(f"Unknown tool handler: {handler_name}")
            if handler is None:
                raise InvalidParamsError("Missing required parameter: handler")
            return ToolConfig(
                name=params.get("name"),
                handler=handler,
                description=params.get("description"),
                input_schema=params.get("inputSchema", params.get("input_schema")),
                metadata=params.get("metadata"),
                streaming=bool(params.get("streaming", False)),
                accepts_input=bool(params.get("acceptsInput", params.get("accepts_input", False))),
                supports_progress=bool(
                    params.get("supportsProgress", params.get("supports_progress", False))
                ),
            )

        return PromptConfig(
            name=params.get("name"),
            template=params.get("template"),
            description=params.get("description"),
            content_type=params.get("contentType", params.get("content_type", "text/plain")),
            arguments=[PromptArgument(**arg) for arg in params.get("arguments") or []],
            metadata=params.get("metadata"),
        )
    except ValidationError as e:
        raise InvalidParamsError(f"Invalid {kind.value} definition: {e.errors()}")
    except TypeError as e:
        raise InvalidParamsError(f"Invalid {kind.value} definition: {e}")
