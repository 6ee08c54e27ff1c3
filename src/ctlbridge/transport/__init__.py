"""Line-delimited JSON-RPC transport: framing, dispatch and the serve loop."""

from ctlbridge.transport.dispatcher import RequestDispatcher
from ctlbridge.transport.framing import LineFramer, OversizedMessage
from ctlbridge.transport.loop import LoopState, TransportLoop
from ctlbridge.transport.messages import MessageDecodeError, Request, Response, decode_request
from ctlbridge.transport.stdio import StdioTransport

__all__ = [
    "LineFramer",
    "LoopState",
    "MessageDecodeError",
    "OversizedMessage",
    "Request",
    "RequestDispatcher",
    "Response",
    "StdioTransport",
    "TransportLoop",
    "decode_request",
]
