"""Error taxonomy for the bridge.

Every failure that can reach a caller is a BridgeError carrying a stable
machine-readable code. Codes follow JSON-RPC 2.0 where a standard code
exists, and use the implementation-defined -32000..-32099 range otherwise:

    -32700  Parse error       Message is not UTF-8 JSON
    -32600  Invalid Request   Message is not a {id?, method, params} object
    -32601  Method not found  No handler for the method
    -32602  Invalid params    Parameters missing or of the wrong shape
    -32603  Internal error    Unexpected fault inside the bridge
    -32001  Not found         Resource id (or parent id) is not live
    -32002  Driver failure    Controlled program reported an error or died
    -32003  Timeout           Controlled program did not answer in time
"""

from __future__ import annotations

from enum import IntEnum
from typing import Any


class ErrorCode(IntEnum):
    """Stable error codes written into error responses."""

    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL = -32603
    NOT_FOUND = -32001
    DRIVER_FAILURE = -32002
    TIMEOUT = -32003


class BridgeError(Exception):
    """Base class for errors that are reported to the caller.

    Attributes:
        code: Stable error code for the response.
        message: Human-readable description.
        data: Optional structured details.
    """

    code: ErrorCode = ErrorCode.INTERNAL

    def __init__(self, message: str, *, data: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.data = data

    def to_error(self) -> dict[str, Any]:
        """Build the `error` object of a response."""
        error: dict[str, Any] = {"code": int(self.code), "message": self.message}
        if self.data:
            error["data"] = self.data
        return error


class ParseError(BridgeError):
    """Message bytes could not be decoded as UTF-8 JSON."""

    code = ErrorCode.PARSE_ERROR


class InvalidRequest(BridgeError):
    """Decoded message is not a valid request object."""

    code = ErrorCode.INVALID_REQUEST


class MethodNotFound(BridgeError):
    """No handler is registered for the requested method."""

    code = ErrorCode.METHOD_NOT_FOUND


class InvalidParams(BridgeError):
    """Request parameters are missing or malformed."""

    code = ErrorCode.INVALID_PARAMS


class InternalError(BridgeError):
    """Unexpected fault in the bridge itself."""

    code = ErrorCode.INTERNAL


class NotFound(BridgeError):
    """Resource id does not reference a live entry."""

    code = ErrorCode.NOT_FOUND


class ParentNotFound(NotFound):
    """Parent id given for a child creation does not reference a live entry."""


class InvalidParent(NotFound):
    """Registry was asked to create an entry under a parent it cannot see."""


class DriverFailure(BridgeError):
    """Controlled program returned an error, or its process/connection died."""

    code = ErrorCode.DRIVER_FAILURE


class DriverTimeout(BridgeError):
    """Controlled program did not complete an operation in time."""

    code = ErrorCode.TIMEOUT
