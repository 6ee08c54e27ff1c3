"""Driver adapter protocol for controlled programs."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError

from ctlbridge.errors import InvalidParams


class OpParams(BaseModel):
    """Base model for creation options and operation arguments.

    Unknown fields are rejected so typos surface as InvalidParams
    instead of being silently ignored.
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class NoParams(OpParams):
    """Operation or level that takes no arguments."""


ParamsT = TypeVar("ParamsT", bound=OpParams)


def parse_params(model: type[ParamsT], data: Mapping[str, Any] | None) -> ParamsT:
    """Validate a parameter mapping against a model.

    Raises:
        InvalidParams: If the data does not fit the model.
    """
    try:
        return model.model_validate(dict(data or {}))
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'params'}: {err['msg']}"
            for err in e.errors()
        )
        raise InvalidParams(f"Invalid params: {details}") from e


class DriverAdapter(Protocol):
    """Capability surface of a controlled program.

    The tree manager is the only caller. Any method may raise; the tree
    manager wraps non-BridgeError exceptions as DriverFailure, and
    TimeoutError as DriverTimeout.

    Implementations:
    - MemoryDriver: in-process engine/context/surface tree
    - TmuxDriver: session/window/pane via the tmux CLI
    - NeovimDriver: headless editor instances via --listen sockets
    - BrowserDriver: engine/context/surface via playwright
    """

    name: str
    """Driver name; prefix for standalone methods."""

    levels: tuple[str, ...]
    """Kind of each tree level, top first (1 to 3 levels)."""

    options: Mapping[str, type[OpParams]]
    """Creation options model per kind."""

    operations: Mapping[str, Mapping[str, type[OpParams]]]
    """Argument model per operation, per kind."""

    standalone: Mapping[str, type[OpParams]]
    """Argument model per operation that needs no tree entry."""

    async def spawn_top(self, options: OpParams) -> Any:
        """Start a top-level resource and return its handle."""
        ...

    async def spawn_child(self, parent_handle: Any, kind: str, options: OpParams) -> Any:
        """Create a resource of `kind` under a parent handle."""
        ...

    async def invoke(self, handle: Any, op: str, args: OpParams) -> Any:
        """Run one operation against a handle; result must be JSON-serializable."""
        ...

    async def close(self, handle: Any) -> None:
        """Release the resource behind a handle."""
        ...

    def describe(self, handle: Any) -> dict[str, str]:
        """Metadata to store on the entry (called after create and invoke)."""
        ...

    async def run_standalone(self, op: str, args: OpParams) -> Any:
        """Run an operation that does not target a tree entry."""
        ...
