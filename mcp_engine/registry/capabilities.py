"""Per-kind capabilities: read for resources, validate for tools, render for prompts."""

import json
import logging
import string
from typing import Any, Callable, Dict, List, Optional

from ..errors import InvalidParamsError
from .models import PromptArgument

logger = logging.getLogger(__name__)

_JSON_TYPES = {
    "object": dict,
    "array": list,
    "string": str,
    "boolean": bool,
    "null": type(None),
}


class ChunkReader:
    """Reads a byte buffer in fixed-size chunks; ``None`` marks the end."""

    def __init__(self, data: bytes, chunk_size: int, offset: int = 0):
        if chunk_size <= 0:
            raise InvalidParamsError(f"chunk size must be positive, got {chunk_size}")
        if offset < 0 or offset > len(data):
            raise InvalidParamsError(f"offset {offset} outside resource of {len(data)} bytes")
        self._data = data
        self.chunk_size = chunk_size
        self.offset = offset

    @property
    def exhausted(self) -> bool:
        return self.offset >= len(self._data)

    def read_chunk(self) -> Optional[bytes]:
        """Next chunk of at most ``chunk_size`` bytes, or None once exhausted."""
        if self.exhausted:
            return None
        chunk = self._data[self.offset : self.offset + self.chunk_size]
        self.offset += len(chunk)
        return chunk

    def __iter__(self):
        while True:
            chunk = self.read_chunk()
            if chunk is None:
                return
            yield chunk


class ResourceCapability:
    def __init__(self, content: bytes):
        self.content = content

    def read(self) -> bytes:
        return self.content

    def open_reader(self, chunk_size: int, offset: int = 0) -> ChunkReader:
        """Fresh chunked reader positioned at ``offset``."""
        return ChunkReader(self.content, chunk_size, offset)


class ToolCapability:
    def __init__(self, handler: Callable[..., Any], input_schema: Optional[str] = None):
        self.handler = handler
        self.input_schema = input_schema
        self._schema = self._parse_schema(input_schema)

    @staticmethod
    def _parse_schema(input_schema: Optional[str]) -> Optional[Dict[str, Any]]:
        # Plain content-type strings carry no structure to check against.
        if not input_schema:
            return None
        try:
            schema = json.loads(input_schema)
        except ValueError:
            return None
        return schema if isinstance(schema, dict) else None

    def validate(self, data: bytes) -> List[str]:
        """Check input against the JSON-schema subset; returns the problems found."""
        if self._schema is None:
            return []

        try:
            value = json.loads(data.decode("utf-8")) if data else None
        except (UnicodeDecodeError, ValueError) as e:
            return [f"input is not valid JSON: {e}"]

        return _check(self._schema, value, "input")


def _check(schema: Dict[str, Any], value: Any, path: str) -> List[str]:
    problems = []
    expected = schema.get("type")
    if expected and not _matches_type(expected, value):
        return [f"{path}: expected {expected}, got {type(value).__name__}"]

    if isinstance(value, dict):
        for key in schema.get("required", []):
            if key not in value:
                problems.append(f"{path}: missing required property '{key}'")
        for key, sub_schema in schema.get("properties", {}).items():
            if key in value and isinstance(sub_schema, dict):
                problems.extend(_check(sub_schema, value[key], f"{path}.{key}"))
    return problems


def _matches_type(expected: str, value: Any) -> bool:
    if expected == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if expected == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    python_type = _JSON_TYPES.get(expected)
    return python_type is None or isinstance(value, python_type)


class PromptCapability:
    def __init__(self, template: str, arguments: List[PromptArgument]):
        self.template = template
        self.arguments = arguments

    def render(self, arguments: Optional[Dict[str, Any]] = None) -> str:
        """Fill the template; missing required arguments are invalid params."""
        arguments = dict(arguments or {})

        missing = [
            arg.name for arg in self.arguments if arg.required and arg.name not in arguments
        ]
        if missing:
            raise InvalidParamsError(f"Missing required prompt arguments: {missing}")

        # Optional declared arguments render as empty strings.
        for arg in self.arguments:
            arguments.setdefault(arg.name, "")

        try:
            placeholders = {
                field_name
                for _, field_name, _, _ in string.Formatter().parse(self.template)
                if field_name
            }
        except ValueError as e:
            raise InvalidParamsError(f"Malformed prompt template: {e}")
        unknown = placeholders - set(arguments)
        if unknown:
            raise InvalidParamsError(f"No value for template placeholders: {sorted(unknown)}")

        try:
            return self.template.format_map(arguments)
        except (ValueError, IndexError, KeyError, AttributeError) as e:
            raise InvalidParamsError(f"Cannot render prompt template: {e!r}")
