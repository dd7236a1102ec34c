"""JSON-RPC 2.0 envelope encoding and decoding."""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import mcp.types as types

from ..errors import InvalidParamsError, InvalidRequestError, ProtocolError

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"

RequestId = Union[int, str]


@dataclass
class Envelope:
    """A decoded request; ``id`` is None for notifications."""

    method: str
    params: Dict[str, Any] = field(default_factory=dict)
    id: Optional[RequestId] = None

    @property
    def is_notification(self) -> bool:
        return self.id is None


@dataclass
class InvalidEnvelope:
    """An item that could not be decoded; answered with ``error`` under ``id``."""

    error: ProtocolError
    id: Optional[RequestId] = None

    @property
    def is_notification(self) -> bool:
        return False


@dataclass
class Batch:
    items: List[Union[Envelope, InvalidEnvelope]]


Message = Union[Envelope, InvalidEnvelope, Batch]


@dataclass
class ResponseFrame:
    id: Optional[RequestId]
    result: Any = None
    error: Optional[types.ErrorData] = None


@dataclass
class NotificationFrame:
    method: str
    params: Dict[str, Any] = field(default_factory=dict)


IncomingFrame = Union[ResponseFrame, NotificationFrame]


def _valid_id(value: Any) -> bool:
    return isinstance(value, (int, str)) and not isinstance(value, bool)


def _parse(data: Union[bytes, str]) -> Any:
    try:
        if isinstance(data, (bytes, bytearray)):
            data = data.decode("utf-8")
        return json.loads(data)
    except (UnicodeDecodeError, ValueError) as e:
        raise InvalidRequestError(f"Unparseable message: {e}")


def decode(data: Union[bytes, str]) -> Message:
    """Decode one request or a batch.

    Raises InvalidRequestError when not even an id can be recovered; items
    with a readable id come back as InvalidEnvelope carrying that id.
    """
    payload = _parse(data)

    if isinstance(payload, list):
        if not payload:
            raise InvalidRequestError("Empty batch")
        return Batch(items=[decode_item(item) for item in payload])

    if isinstance(payload, dict):
        return decode_item(payload)

    raise InvalidRequestError(f"Expected an object or array, got {type(payload).__name__}")


def decode_item(item: Any) -> Union[Envelope, InvalidEnvelope]:
    """Validate one envelope; invalid ones keep a valid id for the error response."""
    if not isinstance(item, dict):
        return InvalidEnvelope(InvalidRequestError("Request must be an object"))

    request_id = item.get("id")
    if "id" in item and request_id is not None and not _valid_id(request_id):
        return InvalidEnvelope(InvalidRequestError("Request id must be a string or integer"))

    if item.get("jsonrpc", JSONRPC_VERSION) != JSONRPC_VERSION:
        return InvalidEnvelope(
            InvalidRequestError(f"Unsupported jsonrpc version: {item.get('jsonrpc')}"),
            request_id,
        )

    method = item.get("method")
    if not isinstance(method, str) or not method:
        return InvalidEnvelope(InvalidRequestError("Missing method"), request_id)

    params = item.get("params")
    if params is None:
        params = {}
    elif not isinstance(params, dict):
        return InvalidEnvelope(InvalidParamsError("params must be an object"), request_id)

    return Envelope(method=method, params=params, id=request_id)


def request(request_id: RequestId, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Request envelope."""
    message = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
    if params:
        message["params"] = params
    return message


def notification(method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Notification envelope; it carries no id."""
    message = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params:
        message["params"] = params
    return message


def success(request_id: Optional[RequestId], result: Any) -> Dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def failure(request_id: Optional[RequestId], error: ProtocolError) -> Dict[str, Any]:
    """Error response carrying the error's kind in ``data``."""
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": error.to_error_data().model_dump(exclude_none=True),
    }


def dumps(message: Any) -> bytes:
    """Compact JSON encoding used on the wire."""
    return json.dumps(message, separators=(",", ":"), default=str).encode("utf-8")


def decode_incoming(data: Union[bytes, str]) -> List[IncomingFrame]:
    """Decode frames arriving at a client: responses and server notifications."""
    payload = _parse(data)
    items = payload if isinstance(payload, list) else [payload]

    frames: List[IncomingFrame] = []
    for item in items:
        if not isinstance(item, dict):
            logger.warning(f"Ignoring non-object frame: {item!r}")
            continue

        if "result" in item or "error" in item:
            error = None
            if item.get("error") is not None:
                try:
                    error = types.ErrorData.model_validate(item["error"])
                except ValueError as e:
                    logger.warning(f"Malformed error payload: {e}")
                    error = types.ErrorData(code=types.INTERNAL_ERROR, message=str(item["error"]))
            frames.append(ResponseFrame(id=item.get("id"), result=item.get("result"), error=error))
        elif isinstance(item.get("method"), str):
            params = item.get("params") if isinstance(item.get("params"), dict) else {}
            frames.append(NotificationFrame(method=item["method"], params=params))
        else:
            logger.warning(f"Ignoring unrecognised frame: {item!r}")

    return frames
