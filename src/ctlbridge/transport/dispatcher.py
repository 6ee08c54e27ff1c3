"""Request dispatcher: method name -> handler lookup table.

The table is built once from the driver's declared levels and operations:

    <kind>.create      createTop / createChild
    <kind>.close       cascade close
    <kind>.<op>        driver operation on a resolved entry
    <driver>.<op>      standalone driver operation
    tree.list / tree.get / tree.close / server.info

Every handler failure becomes an error response. BridgeErrors keep their
code; anything else is reported as an internal error.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import Field

import ctlbridge
from ctlbridge.drivers.protocol import NoParams, OpParams, parse_params
from ctlbridge.errors import BridgeError, InternalError, InvalidParams, MethodNotFound
from ctlbridge.logging import VERBOSE, get_logger
from ctlbridge.session.tree import SessionTreeManager
from ctlbridge.transport.messages import MessageDecodeError, Request, Response, decode_request

log = get_logger("dispatcher")

Handler = Callable[[dict[str, Any]], Awaitable[Any]]


class CreateTopParams(OpParams):
    options: dict[str, Any] = Field(default_factory=dict)


class CreateChildParams(OpParams):
    parent_id: str = Field(alias="parentId", min_length=1)
    options: dict[str, Any] = Field(default_factory=dict)


class EntryIdParams(OpParams):
    id: str = Field(min_length=1)


def id_key(kind: str) -> str:
    """Param key naming the target entry of a `<kind>.*` method."""
    return f"{kind}Id"


def _take_id(params: dict[str, Any], kind: str) -> tuple[str, dict[str, Any]]:
    key = id_key(kind)
    entry_id = params.get(key)
    if not isinstance(entry_id, str) or not entry_id:
        raise InvalidParams(f"Missing or invalid {key}")
    rest = {k: v for k, v in params.items() if k != key}
    return entry_id, rest


class RequestDispatcher:
    """Resolves requests to tree or driver calls and builds responses."""

    def __init__(self, tree: SessionTreeManager) -> None:
        self._tree = tree
        self._handlers: dict[str, Handler] = {}
        self._build_table()

    @property
    def tree(self) -> SessionTreeManager:
        return self._tree

    @property
    def methods(self) -> list[str]:
        return sorted(self._handlers)

    # -------------------------------------------------------------------------
    # Table
    # -------------------------------------------------------------------------

    def _register(self, method: str, handler: Handler) -> None:
        if method in self._handlers:
            raise ValueError(f"Duplicate method {method!r}")
        self._handlers[method] = handler

    def _build_table(self) -> None:
        driver = self._tree.driver

        for kind in self._tree.levels:
            if kind == self._tree.top_kind:
                self._register(f"{kind}.create", self._create_top_handler(kind))
            else:
                self._register(f"{kind}.create", self._create_child_handler(kind))
            self._register(f"{kind}.close", self._close_handler(kind))
            for op in driver.operations.get(kind, {}):
                self._register(f"{kind}.{op}", self._op_handler(kind, op))

        for op in driver.standalone:
            self._register(f"{driver.name}.{op}", self._standalone_handler(op))

        self._register("tree.list", self._tree_list)
        self._register("tree.get", self._tree_get)
        self._register("tree.close", self._tree_close)
        self._register("server.info", self._server_info)

    def _create_top_handler(self, kind: str) -> Handler:
        async def handler(params: dict[str, Any]) -> Any:
            parsed = parse_params(CreateTopParams, params)
            entry_id = await self._tree.create_top(parsed.options)
            return {id_key(kind): entry_id, "entry": self._tree.get(entry_id)}

        return handler

    def _create_child_handler(self, kind: str) -> Handler:
        async def handler(params: dict[str, Any]) -> Any:
            parsed = parse_params(CreateChildParams, params)
            entry_id = await self._tree.create_child(parsed.parent_id, parsed.options, kind=kind)
            return {id_key(kind): entry_id, "entry": self._tree.get(entry_id)}

        return handler

    def _close_handler(self, kind: str) -> Handler:
        async def handler(params: dict[str, Any]) -> Any:
            entry_id, rest = _take_id(params, kind)
            parse_params(NoParams, rest)
            result = await self._tree.close(entry_id, kind=kind)
            return result.to_dict()

        return handler

    def _op_handler(self, kind: str, op: str) -> Handler:
        async def handler(params: dict[str, Any]) -> Any:
            entry_id, args = _take_id(params, kind)
            return await self._tree.invoke(entry_id, op, args, kind=kind)

        return handler

    def _standalone_handler(self, op: str) -> Handler:
        async def handler(params: dict[str, Any]) -> Any:
            return await self._tree.run_standalone(op, params)

        return handler

    async def _tree_list(self, params: dict[str, Any]) -> Any:
        parse_params(NoParams, params)
        return {"tree": self._tree.list()}

    async def _tree_get(self, params: dict[str, Any]) -> Any:
        parsed = parse_params(EntryIdParams, params)
        return self._tree.get(parsed.id)

    async def _tree_close(self, params: dict[str, Any]) -> Any:
        parsed = parse_params(EntryIdParams, params)
        result = await self._tree.close(parsed.id)
        return result.to_dict()

    async def _server_info(self, params: dict[str, Any]) -> Any:
        parse_params(NoParams, params)
        return describe_server(self._tree, self.methods)

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def decode(self, raw: bytes) -> Request | Response:
        """Decode one framed message, or build the error response for it."""
        try:
            return decode_request(raw)
        except MessageDecodeError as e:
            log.warning("Undecodable message: %s", e.error.message)
            return Response.failure(e.request_id, e.error)

    async def dispatch(self, request: Request) -> Response | None:
        """Run one request. Returns None for notifications."""
        log.log(VERBOSE, "-> %s %r", request.method, request.id)
        try:
            handler = self._handlers.get(request.method)
            if handler is None:
                raise MethodNotFound(f"Method not found: {request.method}")
            result = await handler(request.params)
        except BridgeError as e:
            error = e
        except Exception as e:
            log.exception("Internal error handling %s", request.method)
            error = InternalError(f"Internal error: {e}")
        else:
            if request.is_notification:
                return None
            return Response.success(request.id, result)

        if request.is_notification:
            log.warning("Notification %s failed: %s", request.method, error.message)
            return None
        log.log(VERBOSE, "<- %s %r error %d: %s", request.method, request.id, error.code, error.message)
        return Response.failure(request.id, error)

    async def handle_raw(self, raw: bytes) -> Response | None:
        """Decode and dispatch one framed message."""
        decoded = self.decode(raw)
        if isinstance(decoded, Response):
            return decoded
        return await self.dispatch(decoded)


def describe_server(tree: SessionTreeManager, methods: list[str]) -> dict[str, Any]:
    """Server identity and method table, as reported by server.info."""
    driver = tree.driver
    return {
        "name": "ctlbridge",
        "version": ctlbridge.__version__,
        "driver": driver.name,
        "levels": list(tree.levels),
        "methods": methods,
    }
