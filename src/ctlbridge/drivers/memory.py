"""In-process driver with an engine -> context -> surface tree.

Stands in for a real program when exercising the bridge end to end: the
surfaces are text buffers, and closing a node invalidates its subtree the
way closing a browser invalidates its pages.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Any

from ctlbridge.drivers.protocol import NoParams, OpParams
from ctlbridge.errors import DriverFailure, InvalidParams


class EngineOptions(OpParams):
    name: str | None = None


class ContextOptions(OpParams):
    name: str | None = None


class SurfaceOptions(OpParams):
    name: str | None = None
    text: str = ""


class WriteArgs(OpParams):
    text: str


@dataclass
class MemoryNode:
    """A node of the in-memory tree."""

    kind: str
    name: str
    parent: MemoryNode | None = None
    children: list[MemoryNode] = field(default_factory=list)
    buffer: list[str] = field(default_factory=list)
    closed: bool = False

    def invalidate(self) -> None:
        self.closed = True
        for child in self.children:
            child.invalidate()


class MemoryDriver:
    """Driver whose resources live entirely in this process."""

    name = "memory"
    levels = ("engine", "context", "surface")
    options = {
        "engine": EngineOptions,
        "context": ContextOptions,
        "surface": SurfaceOptions,
    }
    operations = {
        "surface": {
            "write": WriteArgs,
            "read": NoParams,
            "clear": NoParams,
        },
    }
    standalone: dict[str, type[OpParams]] = {}

    def __init__(self) -> None:
        self._counter = itertools.count(1)
        self.engines: list[MemoryNode] = []

    async def spawn_top(self, options: OpParams) -> MemoryNode:
        assert isinstance(options, EngineOptions)
        node = MemoryNode("engine", options.name or f"engine{next(self._counter)}")
        self.engines.append(node)
        return node

    async def spawn_child(self, parent_handle: MemoryNode, kind: str, options: OpParams) -> MemoryNode:
        self._check_open(parent_handle)
        name = getattr(options, "name", None) or f"{kind}{next(self._counter)}"
        node = MemoryNode(kind, name, parent=parent_handle)
        if isinstance(options, SurfaceOptions) and options.text:
            node.buffer.append(options.text)
        parent_handle.children.append(node)
        return node

    async def invoke(self, handle: MemoryNode, op: str, args: OpParams) -> Any:
        self._check_open(handle)
        if op == "write":
            assert isinstance(args, WriteArgs)
            handle.buffer.append(args.text)
            return {"written": len(args.text)}
        if op == "read":
            return {"text": "".join(handle.buffer)}
        if op == "clear":
            handle.buffer.clear()
            return {"cleared": True}
        raise InvalidParams(f"Unknown operation: {op}")

    async def close(self, handle: MemoryNode) -> None:
        self._check_open(handle)
        handle.invalidate()
        if handle.parent is not None:
            handle.parent.children.remove(handle)
        else:
            self.engines.remove(handle)

    def describe(self, handle: MemoryNode) -> dict[str, str]:
        metadata = {"name": handle.name}
        if handle.kind == "surface":
            metadata["length"] = str(sum(len(chunk) for chunk in handle.buffer))
        return metadata

    async def run_standalone(self, op: str, args: OpParams) -> Any:
        raise InvalidParams(f"Unknown operation: {op}")

    @staticmethod
    def _check_open(node: MemoryNode) -> None:
        if node.closed:
            raise DriverFailure(f"{node.kind} {node.name} is closed")
