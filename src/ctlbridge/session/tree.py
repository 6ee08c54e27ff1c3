"""Session tree manager.

Composes one ResourceRegistry per driver level into a strict parent/child
hierarchy (e.g. engine -> context -> surface) and owns every call into the
driver. Closing an entry cascades to all of its descendants.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Mapping
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ctlbridge.drivers.protocol import NoParams, parse_params
from ctlbridge.errors import (
    BridgeError,
    DriverFailure,
    DriverTimeout,
    InvalidParams,
    NotFound,
    ParentNotFound,
)
from ctlbridge.logging import get_logger
from ctlbridge.session.locks import KeyedLocks
from ctlbridge.session.registry import ResourceEntry, ResourceRegistry

if TYPE_CHECKING:
    from ctlbridge.drivers.protocol import DriverAdapter

log = get_logger("session")

MAX_LEVELS = 3


@dataclass
class CloseResult:
    """Outcome of a close or shutdown.

    Attributes:
        closed_ids: Ids removed from bookkeeping, deepest descendants first.
        failures: Close targets whose driver close failed, mapped to the error
            message. They are still removed; closing is terminal.
    """

    closed_ids: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures

    def merge(self, other: CloseResult) -> None:
        self.closed_ids.extend(other.closed_ids)
        self.failures.update(other.failures)

    def to_dict(self) -> dict[str, Any]:
        return {"closedIds": list(self.closed_ids), "failures": dict(self.failures)}


class SessionTreeManager:
    """Manages the resource tree of one driver.

    Responsibilities:
    - Create top-level and child entries through the driver
    - Resolve ids, checking the expected kind
    - Serialize operations that target the same id
    - Cascade close to descendants, tolerating child close faults
    - Wrap driver faults as DriverFailure / DriverTimeout
    """

    def __init__(
        self,
        driver: DriverAdapter,
        *,
        close_timeout: float | None = 10.0,
    ) -> None:
        """Initialize the tree for a driver.

        Args:
            driver: Driver adapter whose `levels` define the hierarchy.
            close_timeout: Seconds allowed for each driver close call.
                None waits indefinitely.
        """
        levels = tuple(driver.levels)
        if not 1 <= len(levels) <= MAX_LEVELS:
            raise ValueError(f"Driver must declare 1 to {MAX_LEVELS} levels, got {len(levels)}")
        if len(set(levels)) != len(levels):
            raise ValueError(f"Driver levels must be distinct: {levels}")

        self._driver = driver
        self._levels = levels
        self._close_timeout = close_timeout
        self._locks = KeyedLocks()

        self._registries: dict[str, ResourceRegistry] = {}
        parent: ResourceRegistry | None = None
        for kind in levels:
            registry = ResourceRegistry(kind, parent)
            self._registries[kind] = registry
            parent = registry

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def driver(self) -> DriverAdapter:
        return self._driver

    @property
    def levels(self) -> tuple[str, ...]:
        return self._levels

    @property
    def top_kind(self) -> str:
        return self._levels[0]

    def child_kind(self, kind: str) -> str | None:
        """Kind one level below `kind`, or None for the leaf level."""
        index = self._levels.index(kind)
        if index + 1 < len(self._levels):
            return self._levels[index + 1]
        return None

    def parent_kind(self, kind: str) -> str | None:
        """Kind one level above `kind`, or None for the top level."""
        index = self._levels.index(kind)
        return self._levels[index - 1] if index > 0 else None

    def exists(self, entry_id: str) -> bool:
        return self._lookup(entry_id) is not None

    def get(self, entry_id: str) -> dict[str, Any]:
        """Snapshot of a live entry.

        Raises:
            NotFound: If the id is not live.
        """
        return self._require(entry_id).snapshot()

    def kind_of(self, entry_id: str) -> str:
        return self._require(entry_id).kind

    def ids(self) -> list[str]:
        """All live ids, level by level."""
        return [entry.id for registry in self._registries.values() for entry in registry]

    def list(self) -> list[dict[str, Any]]:
        """Nested snapshot of the whole tree, each node with `children`."""
        return [self._subtree(entry) for entry in self._registries[self.top_kind]]

    def __len__(self) -> int:
        return sum(len(registry) for registry in self._registries.values())

    def _subtree(self, entry: ResourceEntry) -> dict[str, Any]:
        node = entry.snapshot()
        node["children"] = [self._subtree(child) for child in self._children(entry)]
        return node

    def _children(self, entry: ResourceEntry) -> list[ResourceEntry]:
        kind = self.child_kind(entry.kind)
        if kind is None:
            return []
        return self._registries[kind].list_by_parent(entry.id)

    def _descendants(self, entry: ResourceEntry) -> list[ResourceEntry]:
        """All descendants, deepest first (post-order)."""
        result: list[ResourceEntry] = []
        for child in self._children(entry):
            result.extend(self._descendants(child))
            result.append(child)
        return result

    def _lookup(self, entry_id: str) -> ResourceEntry | None:
        for registry in self._registries.values():
            if entry_id in registry:
                return registry.get(entry_id)
        return None

    def _require(
        self,
        entry_id: str,
        kind: str | None = None,
        *,
        missing: type[NotFound] = NotFound,
    ) -> ResourceEntry:
        entry = self._lookup(entry_id)
        if entry is None or (kind is not None and entry.kind != kind):
            label = "Parent" if missing is ParentNotFound else (kind or "Resource")
            raise missing(f"{label} {entry_id} not found")
        return entry

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    async def create_top(self, options: Mapping[str, Any] | None = None) -> str:
        """Start a top-level resource through the driver and register it.

        Returns:
            The new entry id.
        """
        kind = self.top_kind
        parsed = parse_params(self._driver.options.get(kind, NoParams), options)

        handle = await self._call(self._driver.spawn_top(parsed), f"create {kind}")
        entry_id = await self._register(kind, None, handle)
        log.info("Created %s", entry_id)
        return entry_id

    async def create_child(
        self,
        parent_id: str,
        options: Mapping[str, Any] | None = None,
        *,
        kind: str | None = None,
    ) -> str:
        """Create a resource under a live parent and register it.

        Args:
            parent_id: Live entry one level up.
            options: Creation options for the child's kind.
            kind: Expected child kind. The parent must then be of the kind
                one level above it.

        Raises:
            ParentNotFound: If parent_id is unknown (or of the wrong kind);
                nothing is registered.
            InvalidParams: If the parent is a leaf, or options are malformed.
        """
        expected_parent: str | None = None
        if kind is not None:
            if kind not in self._levels:
                raise InvalidParams(f"Unknown kind {kind!r}")
            expected_parent = self.parent_kind(kind)
            if expected_parent is None:
                raise InvalidParams(f"{kind} is a top-level kind")

        parent = self._require(parent_id, expected_parent, missing=ParentNotFound)
        child = self.child_kind(parent.kind)
        if child is None:
            raise InvalidParams(f"{parent.kind} entries cannot have children")
        kind = child
        parsed = parse_params(self._driver.options.get(kind, NoParams), options)

        async with self._locks.hold(parent_id):
            # Parent may have been closed while we waited
            parent = self._require(parent_id, expected_parent, missing=ParentNotFound)
            handle = await self._call(
                self._driver.spawn_child(parent.handle, kind, parsed),
                f"create {kind} in {parent_id}",
            )
            entry_id = await self._register(kind, parent_id, handle)

        log.info("Created %s under %s", entry_id, parent_id)
        return entry_id

    async def _register(self, kind: str, parent_id: str | None, handle: Any) -> str:
        """Register a freshly spawned handle; close it if that fails or is cancelled."""
        try:
            return self._registries[kind].create(kind, parent_id, handle, self._describe(handle))
        except BaseException:
            log.warning("Registering new %s failed; closing its handle", kind)
            try:
                await self._call(
                    self._driver.close(handle),
                    f"discard new {kind}",
                    timeout=self._close_timeout,
                )
            except BridgeError as e:
                log.warning("Discarding new %s failed: %s", kind, e.message)
            raise

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def invoke(
        self,
        entry_id: str,
        op: str,
        args: Mapping[str, Any] | None = None,
        *,
        kind: str | None = None,
    ) -> Any:
        """Run a driver operation against a live entry.

        Args:
            entry_id: Target entry.
            op: Operation name declared by the driver for the entry's kind.
            args: Operation arguments, validated against the driver's model.
            kind: Expected kind; a mismatch is reported as NotFound.
        """
        entry = self._require(entry_id, kind)
        model = self._driver.operations.get(entry.kind, {}).get(op)
        if model is None:
            raise InvalidParams(f"{entry.kind} has no operation {op!r}")
        parsed = parse_params(model, args)

        async with self._locks.hold(entry_id):
            entry = self._require(entry_id, kind)
            result = await self._call(
                self._driver.invoke(entry.handle, op, parsed),
                f"{entry.kind}.{op} on {entry_id}",
            )
            entry.metadata.update(self._describe(entry.handle))
        return result

    async def run_standalone(self, op: str, args: Mapping[str, Any] | None = None) -> Any:
        """Run a driver operation that does not target an entry."""
        model = self._driver.standalone.get(op)
        if model is None:
            raise InvalidParams(f"{self._driver.name} has no operation {op!r}")
        parsed = parse_params(model, args)
        return await self._call(
            self._driver.run_standalone(op, parsed), f"{self._driver.name}.{op}"
        )

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    async def close(self, entry_id: str, *, kind: str | None = None) -> CloseResult:
        """Close an entry and, transitively, all of its descendants.

        Holds the locks of the entry and every descendant so no operation
        runs on a handle while it is being released. Queued operations on
        removed ids see NotFound once they get the lock.

        Raises:
            NotFound: If the id is not live (or not of `kind`); the tree is
                unchanged.
        """
        self._require(entry_id, kind)

        async with AsyncExitStack() as stack:
            await self._locks.acquire_all(stack, [entry_id])
            entry = self._require(entry_id, kind)

            # Children created while we waited for a lock are picked up on
            # the next pass
            locked = {entry_id}
            while True:
                pending = [
                    child.id
                    for child in reversed(self._descendants(entry))
                    if child.id not in locked
                ]
                if not pending:
                    break
                await self._locks.acquire_all(stack, pending)
                locked.update(pending)

            return await self._teardown(entry)

    async def close_all(self) -> CloseResult:
        """Close every top-level entry (and so the whole tree)."""
        result = CloseResult()
        for entry in self._registries[self.top_kind]:
            try:
                result.merge(await self.close(entry.id))
            except NotFound:
                continue  # closed concurrently
        return result

    async def _teardown(self, entry: ResourceEntry) -> CloseResult:
        result = CloseResult()

        for child in self._descendants(entry):
            try:
                await self._close_handle(child)
            except BridgeError as e:
                # Usually the parent already tore the child down
                log.warning("Ignoring close failure for %s: %s", child.id, e.message)
            result.closed_ids.extend(self._registries[child.kind].delete(child.id))

        try:
            await self._close_handle(entry)
        except BridgeError as e:
            log.warning("Close failed for %s: %s", entry.id, e.message)
            result.failures[entry.id] = e.message
        result.closed_ids.extend(self._registries[entry.kind].delete(entry.id))

        log.info("Closed %s (%d entries)", entry.id, len(result.closed_ids))
        return result

    async def _close_handle(self, entry: ResourceEntry) -> None:
        await self._call(
            self._driver.close(entry.handle),
            f"close {entry.id}",
            timeout=self._close_timeout,
        )

    # -------------------------------------------------------------------------
    # Driver calls
    # -------------------------------------------------------------------------

    async def _call(
        self,
        awaitable: Awaitable[Any],
        action: str,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Await a driver call, wrapping raw faults in the error taxonomy."""
        try:
            if timeout is not None:
                return await asyncio.wait_for(awaitable, timeout=timeout)
            return await awaitable
        except BridgeError:
            raise
        except (asyncio.TimeoutError, TimeoutError) as e:
            raise DriverTimeout(f"{action} timed out") from e
        except Exception as e:
            raise DriverFailure(f"{action} failed: {e}") from e

    def _describe(self, handle: Any) -> dict[str, str]:
        try:
            return {str(k): str(v) for k, v in self._driver.describe(handle).items()}
        except Exception as e:
            log.debug("describe() failed: %s", e)
            return {}
