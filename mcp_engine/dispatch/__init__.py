"""Message dispatch: envelope codec and method routing."""

from . import codec
from .codec import Batch, Envelope, InvalidEnvelope, NotificationFrame, ResponseFrame
from .dispatcher import Dispatcher, NotificationSink
from .payload import decode_bytes, encode_bytes

__all__ = [
    "codec",
    "Dispatcher",
    "NotificationSink",
    "Envelope",
    "InvalidEnvelope",
    "Batch",
    "ResponseFrame",
    "NotificationFrame",
    "encode_bytes",
    "decode_bytes",
]
