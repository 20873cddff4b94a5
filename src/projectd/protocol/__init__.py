"""Line-delimited JSON control protocol spoken with worker processes."""

from projectd.protocol.framing import LineDecoder, LineFramingError, encode_message
from projectd.protocol.messages import (
    ExtensionUiRequest,
    InboundMessage,
    Response,
    WorkerEvent,
    WorkerState,
    parse_message,
)

__all__ = [
    "LineDecoder",
    "LineFramingError",
    "encode_message",
    "ExtensionUiRequest",
    "InboundMessage",
    "Response",
    "WorkerEvent",
    "WorkerState",
    "parse_message",
]
