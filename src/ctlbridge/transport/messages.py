"""Request and response shapes for the line-delimited JSON-RPC wire."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, ValidationError, field_validator

from ctlbridge.errors import BridgeError, InternalError, InvalidRequest, ParseError
from ctlbridge.logging import get_logger

log = get_logger("transport")

JSONRPC_VERSION = "2.0"

RequestId = StrictInt | StrictStr | None


class Request(BaseModel):
    """Decoded request: `{id?, method, params}`.

    A request whose `id` key is absent is a notification. An explicit
    `"id": null` is still a request and gets a response.
    """

    model_config = ConfigDict(extra="ignore")

    jsonrpc: StrictStr | None = None
    id: RequestId = None
    method: StrictStr = Field(min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)

    @field_validator("params", mode="before")
    @classmethod
    def _missing_params(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def is_notification(self) -> bool:
        return "id" not in self.model_fields_set


@dataclass
class Response:
    """Exactly one of result or error, correlated by id."""

    id: int | str | None
    result: Any = None
    error: dict[str, Any] | None = None

    @classmethod
    def success(cls, request_id: int | str | None, result: Any) -> Response:
        return cls(id=request_id, result=result)

    @classmethod
    def failure(cls, request_id: int | str | None, error: BridgeError) -> Response:
        return cls(id=request_id, error=error.to_error())

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": self.id}
        if self.error is not None:
            d["error"] = self.error
        else:
            d["result"] = self.result
        return d

    def encode(self) -> bytes:
        """Serialize as one newline-terminated line.

        A result that cannot be serialized is replaced by an internal error
        so the caller still gets a correlated response.
        """
        try:
            data = json.dumps(self.to_dict(), separators=(",", ":"))
        except (TypeError, ValueError) as e:
            log.error("Response %r is not serializable: %s", self.id, e)
            fallback = Response.failure(self.id, InternalError(f"Result is not serializable: {e}"))
            data = json.dumps(fallback.to_dict(), separators=(",", ":"))
        return f"{data}\n".encode()


class MessageDecodeError(Exception):
    """A message could not be turned into a Request.

    Attributes:
        error: ParseError or InvalidRequest to report.
        request_id: Correlation id, when the message carried a usable one.
    """

    def __init__(self, error: BridgeError, request_id: int | str | None = None) -> None:
        super().__init__(error.message)
        self.error = error
        self.request_id = request_id


def _usable_id(value: Any) -> int | str | None:
    if isinstance(value, bool):
        return None
    return value if isinstance(value, (int, str)) else None


def decode_request(raw: bytes | str) -> Request:
    """Decode one framed message.

    Raises:
        MessageDecodeError: Wrapping ParseError for bytes that are not UTF-8
            JSON, or InvalidRequest for JSON that is not a request object.
    """
    try:
        text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        data = json.loads(text)
    except UnicodeDecodeError as e:
        raise MessageDecodeError(ParseError(f"Message is not valid UTF-8: {e.reason}")) from e
    except json.JSONDecodeError as e:
        raise MessageDecodeError(ParseError(f"Invalid JSON: {e.msg}")) from e

    if not isinstance(data, dict):
        raise MessageDecodeError(InvalidRequest("Request must be a JSON object"))

    request_id = _usable_id(data.get("id"))
    try:
        return Request.model_validate(data)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'request'}: {err['msg']}"
            for err in e.errors()
        )
        raise MessageDecodeError(InvalidRequest(f"Invalid request: {details}"), request_id) from e
