"""Error taxonomy shared by every engine component."""

from enum import Enum
from typing import Any, Dict, Optional, Type

import mcp.types as types


class ErrorKind(str, Enum):
    INVALID_REQUEST = "invalid-request"
    METHOD_NOT_FOUND = "method-not-found"
    INVALID_PARAMS = "invalid-params"
    INTERNAL_ERROR = "internal-error"
    RESOURCE_NOT_FOUND = "resource-not-found"
    TOOL_NOT_FOUND = "tool-not-found"
    PROMPT_NOT_FOUND = "prompt-not-found"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate-limited"
    UNAVAILABLE = "unavailable"


# Standard JSON-RPC codes come from the MCP SDK, domain codes sit in the
# server-defined range.
ERROR_CODES: Dict[ErrorKind, int] = {
    ErrorKind.INVALID_REQUEST: types.INVALID_REQUEST,
    ErrorKind.METHOD_NOT_FOUND: types.METHOD_NOT_FOUND,
    ErrorKind.INVALID_PARAMS: types.INVALID_PARAMS,
    ErrorKind.INTERNAL_ERROR: types.INTERNAL_ERROR,
    ErrorKind.UNAUTHORIZED: -32001,
    ErrorKind.RESOURCE_NOT_FOUND: -32002,
    ErrorKind.TOOL_NOT_FOUND: -32003,
    ErrorKind.PROMPT_NOT_FOUND: -32004,
    ErrorKind.FORBIDDEN: -32005,
    ErrorKind.TIMEOUT: -32006,
    ErrorKind.RATE_LIMITED: -32007,
    ErrorKind.UNAVAILABLE: -32008,
}


class ProtocolError(Exception):
    """An error that is reported to the peer inside a response envelope."""

    kind: ErrorKind = ErrorKind.INTERNAL_ERROR

    def __init__(self, message: str = "", data: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.kind.value)
        self.message = message or self.kind.value
        self.data = data

    @property
    def code(self) -> int:
        return ERROR_CODES[self.kind]

    def to_error_data(self) -> types.ErrorData:
        """Wire error object; ``data.kind`` names the error kind."""
        data = dict(self.data or {})
        data["kind"] = self.kind.value
        return types.ErrorData(code=self.code, message=self.message, data=data)

    @classmethod
    def from_error_data(cls, error: types.ErrorData) -> "ProtocolError":
        """Rebuild the typed error from a decoded error payload."""
        data = dict(error.data) if isinstance(error.data, dict) else {}
        kind_name = data.pop("kind", None)

        error_cls = None
        if kind_name:
            try:
                error_cls = _ERRORS_BY_KIND.get(ErrorKind(kind_name))
            except ValueError:
                error_cls = None
        if error_cls is None:
            error_cls = _ERRORS_BY_CODE.get(error.code, InternalError)

        return error_cls(error.message, data or None)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class InvalidRequestError(ProtocolError):
    kind = ErrorKind.INVALID_REQUEST


class MethodNotFoundError(ProtocolError):
    kind = ErrorKind.METHOD_NOT_FOUND


class InvalidParamsError(ProtocolError):
    kind = ErrorKind.INVALID_PARAMS


class InternalError(ProtocolError):
    kind = ErrorKind.INTERNAL_ERROR


class NotFoundError(ProtocolError):
    """Base for the per-kind not-found errors."""


class ResourceNotFoundError(NotFoundError):
    kind = ErrorKind.RESOURCE_NOT_FOUND


class ToolNotFoundError(NotFoundError):
    kind = ErrorKind.TOOL_NOT_FOUND


class PromptNotFoundError(NotFoundError):
    kind = ErrorKind.PROMPT_NOT_FOUND


class UnauthorizedError(ProtocolError):
    kind = ErrorKind.UNAUTHORIZED


class ForbiddenError(ProtocolError):
    kind = ErrorKind.FORBIDDEN


class RequestTimeoutError(ProtocolError):
    kind = ErrorKind.TIMEOUT


class RateLimitedError(ProtocolError):
    kind = ErrorKind.RATE_LIMITED


class UnavailableError(ProtocolError):
    kind = ErrorKind.UNAVAILABLE


_ERRORS_BY_KIND: Dict[ErrorKind, Type[ProtocolError]] = {
    cls.kind: cls
    for cls in (
        InvalidRequestError,
        MethodNotFoundError,
        InvalidParamsError,
        InternalError,
        ResourceNotFoundError,
        ToolNotFoundError,
        PromptNotFoundError,
        UnauthorizedError,
        ForbiddenError,
        RequestTimeoutError,
        RateLimitedError,
        UnavailableError,
    )
}

_ERRORS_BY_CODE: Dict[int, Type[ProtocolError]] = {
    ERROR_CODES[kind]: cls for kind, cls in _ERRORS_BY_KIND.items()
}
_ERRORS_BY_CODE[types.PARSE_ERROR] = InvalidRequestError


class TransportError(Exception):
    """Raised by transports; flips session state instead of failing one call."""


class ConnectionLostError(TransportError):
    """The connection dropped while calls were outstanding."""


class ConnectionFailedError(TransportError):
    """Connecting (or every reconnect attempt) failed."""

    def __init__(self, message: str, attempts: int = 1):
        super().__init__(message)
        self.attempts = attempts


class ExecutionCancelled(Exception):
    """Raised inside a tool handler at a checkpoint once cancel was requested."""
