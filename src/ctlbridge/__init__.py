"""ctlbridge - drive interactive programs through a line-delimited JSON-RPC bridge."""

from ctlbridge.errors import BridgeError, ErrorCode
from ctlbridge.session.registry import ResourceEntry, ResourceRegistry
from ctlbridge.session.tree import CloseResult, SessionTreeManager

__all__ = [
    "BridgeError",
    "CloseResult",
    "ErrorCode",
    "ResourceEntry",
    "ResourceRegistry",
    "SessionTreeManager",
]

__version__ = "0.1.0"
