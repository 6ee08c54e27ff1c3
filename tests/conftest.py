"""Root pytest configuration for all tests."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from ctlbridge.config import reset_config
from ctlbridge.drivers.memory import MemoryDriver, MemoryNode
from ctlbridge.drivers.protocol import OpParams
from ctlbridge.session.tree import SessionTreeManager
from ctlbridge.transport.dispatcher import RequestDispatcher

# Configure pytest-asyncio to use auto mode
# This is redundant with pyproject.toml but ensures it's set
pytest_plugins = ("pytest_asyncio",)


# =============================================================================
# Drivers
# =============================================================================


class FaultyDriver(MemoryDriver):
    """MemoryDriver with switchable faults.

    Attributes:
        fail_close: Node names whose close raises RuntimeError.
        hang_close: Node names whose close never returns.
        fail_spawn: Raise RuntimeError from every spawn.
        gates: Per-name events an operation waits on before running.
        calls: (op, node name) log of invoke and close calls, in order.
    """

    def __init__(self) -> None:
        super().__init__()
        self.fail_close: set[str] = set()
        self.hang_close: set[str] = set()
        self.fail_spawn = False
        self.gates: dict[str, asyncio.Event] = {}
        self.calls: list[tuple[str, str]] = []

    async def spawn_top(self, options: OpParams) -> MemoryNode:
        if self.fail_spawn:
            raise RuntimeError("spawn exploded")
        return await super().spawn_top(options)

    async def spawn_child(self, parent_handle: MemoryNode, kind: str, options: OpParams) -> MemoryNode:
        if self.fail_spawn:
            raise RuntimeError("spawn exploded")
        return await super().spawn_child(parent_handle, kind, options)

    async def invoke(self, handle: MemoryNode, op: str, args: OpParams) -> Any:
        self.calls.append((f"{op}:start", handle.name))
        gate = self.gates.get(handle.name)
        if gate is not None:
            await gate.wait()
        result = await super().invoke(handle, op, args)
        self.calls.append((f"{op}:end", handle.name))
        return result

    async def close(self, handle: MemoryNode) -> None:
        self.calls.append(("close", handle.name))
        if handle.name in self.hang_close:
            await asyncio.Event().wait()
        if handle.name in self.fail_close:
            raise RuntimeError(f"cannot close {handle.name}")
        await super().close(handle)


@pytest.fixture
def memory_driver() -> MemoryDriver:
    return MemoryDriver()


@pytest.fixture
def tree(memory_driver: MemoryDriver) -> SessionTreeManager:
    return SessionTreeManager(memory_driver, close_timeout=1.0)


@pytest.fixture
def faulty_driver() -> FaultyDriver:
    return FaultyDriver()


@pytest.fixture
def faulty_tree(faulty_driver: FaultyDriver) -> SessionTreeManager:
    return SessionTreeManager(faulty_driver, close_timeout=0.2)


@pytest.fixture
def dispatcher(tree: SessionTreeManager) -> RequestDispatcher:
    return RequestDispatcher(tree)


# =============================================================================
# Transport
# =============================================================================


class FakeTransport:
    """In-memory byte transport fed from a list of chunks."""

    def __init__(self, chunks: list[bytes] | None = None, *, hold_open: bool = False) -> None:
        self._chunks: asyncio.Queue[bytes] = asyncio.Queue()
        for chunk in chunks or []:
            self._chunks.put_nowait(chunk)
        if not hold_open:
            self._chunks.put_nowait(b"")
        self.written: list[bytes] = []
        self.closed = False

    def push(self, chunk: bytes) -> None:
        self._chunks.put_nowait(chunk)

    def end(self) -> None:
        self._chunks.put_nowait(b"")

    async def read_chunk(self, size: int) -> bytes:
        return await self._chunks.get()

    async def write(self, data: bytes) -> None:
        self.written.append(data)

    async def close(self) -> None:
        self.closed = True

    @property
    def responses(self) -> list[dict[str, Any]]:
        lines = b"".join(self.written).decode("utf-8").splitlines()
        return [json.loads(line) for line in lines if line]


def request_line(request_id: Any, method: str, params: dict[str, Any] | None = None) -> bytes:
    """One framed request."""
    message: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return (json.dumps(message) + "\n").encode()


# =============================================================================
# Config
# =============================================================================


@pytest.fixture
def isolated_config(monkeypatch: pytest.MonkeyPatch, tmp_path):
    """Point every config layer at an empty temp tree."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.delenv("CTLBRIDGE_LOG", raising=False)
    monkeypatch.delenv("CTLBRIDGE_DRIVER", raising=False)
    monkeypatch.setattr(
        "ctlbridge.config.paths.get_system_config_path",
        lambda: tmp_path / "system" / "config.yaml",
    )
    reset_config()
    yield tmp_path
    reset_config()
