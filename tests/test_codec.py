"""Tests for JSON-RPC envelope decoding and encoding."""

import json

import pytest

from mcp_engine.dispatch import codec
from mcp_engine.dispatch.payload import decode_bytes, encode_bytes
from mcp_engine.errors import (
    ERROR_CODES,
    ErrorKind,
    InvalidParamsError,
    InvalidRequestError,
    ProtocolError,
    ToolNotFoundError,
)


class TestDecode:
    def test_single_request(self):
        message = codec.decode(b'{"jsonrpc":"2.0","id":1,"method":"ping"}')
        assert isinstance(message, codec.Envelope)
        assert message.method == "ping"
        assert message.params == {}
        assert not message.is_notification

    def test_notification_has_no_id(self):
        message = codec.decode('{"jsonrpc":"2.0","method":"ping"}')
        assert message.is_notification

    def test_batch_keeps_order_and_flags_bad_items(self):
        message = codec.decode(
            json.dumps(
                [
                    {"jsonrpc": "2.0", "id": "a", "method": "ping"},
                    {"jsonrpc": "2.0", "id": "b"},
                    42,
                ]
            )
        )
        assert isinstance(message, codec.Batch)
        first, second, third = message.items
        assert first.id == "a"
        assert isinstance(second, codec.InvalidEnvelope)
        assert second.id == "b"
        assert isinstance(third, codec.InvalidEnvelope)
        assert third.id is None

    @pytest.mark.parametrize("data", [b"{not json", b"[]", b"17", b"\xff\xfe"])
    def test_undecodable_input(self, data):
        with pytest.raises(InvalidRequestError):
            codec.decode(data)

    def test_params_must_be_an_object(self):
        item = codec.decode_item({"jsonrpc": "2.0", "id": 3, "method": "ping", "params": [1]})
        assert isinstance(item, codec.InvalidEnvelope)
        assert isinstance(item.error, InvalidParamsError)

    def test_boolean_id_rejected(self):
        item = codec.decode_item({"jsonrpc": "2.0", "id": True, "method": "ping"})
        assert isinstance(item, codec.InvalidEnvelope)


class TestErrors:
    def test_error_payload_carries_kind(self):
        response = codec.failure(7, ToolNotFoundError("tool not found: x"))
        assert response["error"]["code"] == ERROR_CODES[ErrorKind.TOOL_NOT_FOUND]
        assert response["error"]["data"]["kind"] == "tool-not-found"

    def test_error_data_round_trip_restores_subclass(self):
        original = ToolNotFoundError("tool not found: x")
        restored = ProtocolError.from_error_data(original.to_error_data())
        assert isinstance(restored, ToolNotFoundError)
        assert restored.message == "tool not found: x"

    def test_incoming_frames(self):
        data = codec.dumps(
            [
                codec.success(1, {"ok": True}),
                codec.failure(2, InvalidParamsError("bad")),
                codec.notification("notifications/tools/list_changed"),
            ]
        )
        ok, failed, note = codec.decode_incoming(data)
        assert ok.result == {"ok": True}
        assert failed.error.code == ERROR_CODES[ErrorKind.INVALID_PARAMS]
        assert note.method == "notifications/tools/list_changed"


class TestPayload:
    def test_text_and_blob_encoding(self):
        assert encode_bytes(b"hi") == {"text": "hi"}
        assert encode_bytes(b"\xff") == {"blob": "/w=="}
        assert decode_bytes({"blob": "/w=="}) == b"\xff"
        assert decode_bytes("hi") == b"hi"
        assert decode_bytes(None) == b""

    def test_invalid_blob(self):
        with pytest.raises(InvalidParamsError):
            decode_bytes({"blob": "***"})
