"""Tests for the session tree manager: hierarchy, cascade close, locking."""

from __future__ import annotations

import asyncio
import random
from types import SimpleNamespace
from typing import Any

import pytest

from conftest import FaultyDriver
from ctlbridge.drivers.memory import MemoryDriver
from ctlbridge.errors import (
    DriverFailure,
    DriverTimeout,
    InvalidParams,
    NotFound,
    ParentNotFound,
)
from ctlbridge.session.tree import CloseResult, SessionTreeManager


async def settle(rounds: int = 10) -> None:
    """Let ready tasks run until they block."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def flatten(nodes: list[dict[str, Any]]) -> list[dict[str, Any]]:
    result: list[dict[str, Any]] = []
    for node in nodes:
        result.append(node)
        result.extend(flatten(node["children"]))
    return result


async def build_chain(tree: SessionTreeManager) -> tuple[str, str, str]:
    engine = await tree.create_top({"name": "eng"})
    context = await tree.create_child(engine, {"name": "ctx"})
    surface = await tree.create_child(context, {"name": "s"})
    return engine, context, surface


# =============================================================================
# Construction
# =============================================================================


class TestLevels:
    """Test hierarchy depth validation."""

    @pytest.mark.parametrize("levels", [(), ("a", "b", "c", "d")])
    def test_rejects_bad_depth(self, levels: tuple[str, ...]) -> None:
        """Only 1 to 3 levels are supported."""
        driver = SimpleNamespace(levels=levels)
        with pytest.raises(ValueError, match="1 to 3"):
            SessionTreeManager(driver)  # type: ignore[arg-type]

    def test_rejects_duplicate_kinds(self) -> None:
        """Level kinds must be distinct."""
        driver = SimpleNamespace(levels=("a", "a"))
        with pytest.raises(ValueError, match="distinct"):
            SessionTreeManager(driver)  # type: ignore[arg-type]

    def test_kind_navigation(self, tree: SessionTreeManager) -> None:
        """child_kind and parent_kind walk the levels."""
        assert tree.top_kind == "engine"
        assert tree.child_kind("engine") == "context"
        assert tree.child_kind("surface") is None
        assert tree.parent_kind("surface") == "context"
        assert tree.parent_kind("engine") is None


# =============================================================================
# Creation
# =============================================================================


class TestCreate:
    """Test top-level and child creation."""

    async def test_create_chain(self, tree: SessionTreeManager) -> None:
        """Each level gets its own id and parent link."""
        engine, context, surface = await build_chain(tree)
        assert (engine, context, surface) == ("engine-1", "context-1", "surface-1")
        assert tree.get(surface)["parentId"] == context
        assert tree.get(context)["parentId"] == engine
        assert tree.get(engine)["parentId"] is None

    async def test_metadata_from_describe(self, tree: SessionTreeManager) -> None:
        """Entries carry the driver's describe() output."""
        engine = await tree.create_top({"name": "eng"})
        assert tree.get(engine)["metadata"] == {"name": "eng"}

    async def test_unknown_parent(self, tree: SessionTreeManager, memory_driver: MemoryDriver) -> None:
        """Unknown parent ids raise ParentNotFound and register nothing."""
        with pytest.raises(ParentNotFound):
            await tree.create_child("engine-9", {})
        assert len(tree) == 0
        assert memory_driver.engines == []

    async def test_child_of_leaf(self, tree: SessionTreeManager) -> None:
        """Leaf entries cannot have children."""
        _, _, surface = await build_chain(tree)
        with pytest.raises(InvalidParams, match="cannot have children"):
            await tree.create_child(surface, {})

    async def test_expected_kind_checks_parent(self, tree: SessionTreeManager) -> None:
        """A parent of the wrong level is reported as ParentNotFound."""
        engine = await tree.create_top({})
        with pytest.raises(ParentNotFound):
            await tree.create_child(engine, {}, kind="surface")

    async def test_expected_kind_top_level(self, tree: SessionTreeManager) -> None:
        """The top kind cannot be created as a child."""
        engine = await tree.create_top({})
        with pytest.raises(InvalidParams):
            await tree.create_child(engine, {}, kind="engine")

    async def test_bad_options(self, tree: SessionTreeManager, memory_driver: MemoryDriver) -> None:
        """Unknown option fields are rejected before the driver is called."""
        with pytest.raises(InvalidParams, match="bogus"):
            await tree.create_top({"bogus": 1})
        assert memory_driver.engines == []

    async def test_spawn_fault_wrapped(
        self, faulty_tree: SessionTreeManager, faulty_driver: FaultyDriver
    ) -> None:
        """Raw driver exceptions become DriverFailure and nothing is registered."""
        faulty_driver.fail_spawn = True
        with pytest.raises(DriverFailure, match="spawn exploded"):
            await faulty_tree.create_top({})
        assert len(faulty_tree) == 0


    async def test_failed_registration_closes_handle(
        self, faulty_tree: SessionTreeManager, faulty_driver: FaultyDriver, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A spawned handle that cannot be registered is closed, not leaked."""
        engine = await faulty_tree.create_top({"name": "eng"})
        context = await faulty_tree.create_child(engine, {"name": "ctx"})

        def refuse(*args: Any, **kwargs: Any) -> str:
            raise asyncio.CancelledError

        monkeypatch.setattr(faulty_tree._registries["surface"], "create", refuse)
        with pytest.raises(asyncio.CancelledError):
            await faulty_tree.create_child(context, {"name": "s"})

        assert ("close", "s") in faulty_driver.calls
        assert faulty_driver.engines[0].children[0].children == []
        assert len(faulty_tree) == 2


# =============================================================================
# Operations
# =============================================================================


class TestInvoke:
    """Test driver operations on resolved entries."""

    async def test_write_and_read(self, tree: SessionTreeManager) -> None:
        """Operations reach the driver handle."""
        _, _, surface = await build_chain(tree)
        assert await tree.invoke(surface, "write", {"text": "hi"}) == {"written": 2}
        assert await tree.invoke(surface, "read") == {"text": "hi"}

    async def test_metadata_refreshed(self, tree: SessionTreeManager) -> None:
        """describe() runs again after each operation."""
        _, _, surface = await build_chain(tree)
        await tree.invoke(surface, "write", {"text": "hello"})
        assert tree.get(surface)["metadata"]["length"] == "5"

    async def test_unknown_id(self, tree: SessionTreeManager) -> None:
        """Unknown ids raise NotFound."""
        with pytest.raises(NotFound):
            await tree.invoke("surface-1", "read")

    async def test_wrong_kind(self, tree: SessionTreeManager) -> None:
        """An id of another kind is NotFound for a kind-scoped call."""
        _, context, _ = await build_chain(tree)
        with pytest.raises(NotFound):
            await tree.invoke(context, "read", kind="surface")

    async def test_unknown_operation(self, tree: SessionTreeManager) -> None:
        """Operations the driver does not declare are InvalidParams."""
        engine = await tree.create_top({})
        with pytest.raises(InvalidParams, match="no operation"):
            await tree.invoke(engine, "read")

    async def test_bad_arguments(self, tree: SessionTreeManager) -> None:
        """Missing arguments are InvalidParams."""
        _, _, surface = await build_chain(tree)
        with pytest.raises(InvalidParams, match="text"):
            await tree.invoke(surface, "write", {})

    async def test_driver_error_passes_through(self, tree: SessionTreeManager, memory_driver: MemoryDriver) -> None:
        """BridgeErrors raised by a driver keep their type."""
        _, _, surface = await build_chain(tree)
        memory_driver.engines[0].children[0].children[0].closed = True
        with pytest.raises(DriverFailure, match="is closed"):
            await tree.invoke(surface, "read")

    async def test_standalone_unknown(self, tree: SessionTreeManager) -> None:
        """Undeclared standalone operations are InvalidParams."""
        with pytest.raises(InvalidParams):
            await tree.run_standalone("anything")


# =============================================================================
# Close
# =============================================================================


class TestClose:
    """Test cascade close."""

    async def test_cascade_order(self, tree: SessionTreeManager) -> None:
        """Descendants are removed deepest first, target last."""
        engine, context, surface = await build_chain(tree)
        result = await tree.close(engine)
        assert result.closed_ids == [surface, context, engine]
        assert result.failures == {}
        assert tree.list() == []

    async def test_closed_ids_absent_afterwards(self, tree: SessionTreeManager) -> None:
        """Removed ids are gone from list() and get()."""
        engine, context, surface = await build_chain(tree)
        other = await tree.create_top({})
        await tree.close(engine)

        listed = {node["id"] for node in flatten(tree.list())}
        assert listed == {other}
        with pytest.raises(NotFound):
            tree.get(surface)

    async def test_close_subtree_only(self, tree: SessionTreeManager, memory_driver: MemoryDriver) -> None:
        """Closing a middle entry leaves its ancestors alone."""
        engine, context, surface = await build_chain(tree)
        sibling = await tree.create_child(engine, {})
        result = await tree.close(context)

        assert result.closed_ids == [surface, context]
        assert {node["id"] for node in flatten(tree.list())} == {engine, sibling}
        assert len(memory_driver.engines[0].children) == 1

    async def test_close_unknown(self, tree: SessionTreeManager) -> None:
        """Closing an unknown id raises NotFound and changes nothing."""
        await build_chain(tree)
        before = tree.list()
        with pytest.raises(NotFound):
            await tree.close("engine-42")
        assert tree.list() == before

    async def test_close_twice(self, tree: SessionTreeManager) -> None:
        """Closing is terminal; a second close is NotFound."""
        engine = await tree.create_top({})
        await tree.close(engine)
        with pytest.raises(NotFound):
            await tree.close(engine)

    async def test_close_wrong_kind(self, tree: SessionTreeManager) -> None:
        """A kind-scoped close rejects ids of other kinds."""
        engine, _, _ = await build_chain(tree)
        with pytest.raises(NotFound):
            await tree.close(engine, kind="surface")
        assert tree.exists(engine)

    async def test_child_close_failure_tolerated(
        self, faulty_tree: SessionTreeManager, faulty_driver: FaultyDriver
    ) -> None:
        """A failing child close is logged and the cascade completes."""
        engine, context, surface = await build_chain(faulty_tree)
        faulty_driver.fail_close.add("ctx")

        result = await faulty_tree.close(engine)

        assert result.closed_ids == [surface, context, engine]
        assert result.ok
        assert len(faulty_tree) == 0

    async def test_target_close_failure_reported(
        self, faulty_tree: SessionTreeManager, faulty_driver: FaultyDriver
    ) -> None:
        """A failing target close is reported, and the entry is still removed."""
        engine, _, _ = await build_chain(faulty_tree)
        faulty_driver.fail_close.add("eng")

        result = await faulty_tree.close(engine)

        assert not result.ok
        assert "cannot close eng" in result.failures[engine]
        assert engine in result.closed_ids
        assert not faulty_tree.exists(engine)

    async def test_close_timeout(
        self, faulty_tree: SessionTreeManager, faulty_driver: FaultyDriver
    ) -> None:
        """A hanging close is bounded by close_timeout."""
        engine = await faulty_tree.create_top({"name": "eng"})
        faulty_driver.hang_close.add("eng")

        result = await faulty_tree.close(engine)

        assert "timed out" in result.failures[engine]
        assert not faulty_tree.exists(engine)

    async def test_close_all(
        self, faulty_tree: SessionTreeManager, faulty_driver: FaultyDriver
    ) -> None:
        """close_all empties the tree and collects top-level failures."""
        await build_chain(faulty_tree)
        bad = await faulty_tree.create_top({"name": "bad"})
        faulty_driver.fail_close.add("bad")

        result = await faulty_tree.close_all()

        assert len(faulty_tree) == 0
        assert list(result.failures) == [bad]
        assert len(result.closed_ids) == 4

    async def test_close_all_empty(self, tree: SessionTreeManager) -> None:
        """close_all on an empty tree is a clean no-op."""
        result = await tree.close_all()
        assert result.ok
        assert result.closed_ids == []

    def test_close_result_dict(self) -> None:
        """CloseResult serializes with wire names."""
        result = CloseResult(["s1", "c1"], {"c1": "boom"})
        assert result.to_dict() == {"closedIds": ["s1", "c1"], "failures": {"c1": "boom"}}


class TestExampleScenario:
    """End-to-end create/close scenario on the three-level tree."""

    async def test_create_close_then_not_found(self, tree: SessionTreeManager) -> None:
        """Closing the top entry removes the chain; lookups then fail."""
        t1 = await tree.create_top({})
        c1 = await tree.create_child(t1, {})
        s1 = await tree.create_child(c1, {})

        result = await tree.close(t1)

        assert result.closed_ids == [s1, c1, t1]
        with pytest.raises(NotFound):
            tree.get(s1)
        with pytest.raises(NotFound):
            await tree.invoke(s1, "write", {"text": "hi"}, kind="surface")


# =============================================================================
# Properties
# =============================================================================


class TestNoDanglingReferences:
    """Random create/close sequences never leave orphaned entries."""

    @pytest.mark.parametrize("seed", range(8))
    async def test_random_sequences(self, tree: SessionTreeManager, seed: int) -> None:
        """Every listed parentId is null or another listed id."""
        rng = random.Random(seed)
        for _ in range(60):
            ids = tree.ids()
            action = rng.random()
            if action < 0.3 or not ids:
                await tree.create_top({})
            elif action < 0.75:
                parent = rng.choice(ids)
                if tree.child_kind(tree.kind_of(parent)) is None:
                    with pytest.raises(InvalidParams):
                        await tree.create_child(parent, {})
                else:
                    await tree.create_child(parent, {})
            elif action < 0.9:
                await tree.close(rng.choice(ids))
            else:
                with pytest.raises(NotFound):
                    await tree.close(f"engine-{10_000 + rng.randrange(100)}")

            nodes = flatten(tree.list())
            listed = {node["id"] for node in nodes}
            assert len(listed) == len(tree)
            for node in nodes:
                assert node["parentId"] is None or node["parentId"] in listed


# =============================================================================
# Locking
# =============================================================================


class TestPerIdSerialization:
    """Test the per-id single-flight guard."""

    async def test_same_id_serialized(
        self, faulty_tree: SessionTreeManager, faulty_driver: FaultyDriver
    ) -> None:
        """Two operations on one id never overlap."""
        _, _, surface = await build_chain(faulty_tree)
        gate = faulty_driver.gates["s"] = asyncio.Event()

        first = asyncio.create_task(faulty_tree.invoke(surface, "write", {"text": "a"}))
        second = asyncio.create_task(faulty_tree.invoke(surface, "write", {"text": "b"}))
        await settle()
        assert faulty_driver.calls == [("write:start", "s")]

        gate.set()
        await asyncio.gather(first, second)
        assert faulty_driver.calls == [
            ("write:start", "s"),
            ("write:end", "s"),
            ("write:start", "s"),
            ("write:end", "s"),
        ]
        assert await faulty_tree.invoke(surface, "read") == {"text": "ab"}

    async def test_different_ids_concurrent(
        self, faulty_tree: SessionTreeManager, faulty_driver: FaultyDriver
    ) -> None:
        """A blocked operation does not hold up other ids."""
        engine, context, surface = await build_chain(faulty_tree)
        other = await faulty_tree.create_child(context, {"name": "other"})
        gate = faulty_driver.gates["s"] = asyncio.Event()

        blocked = asyncio.create_task(faulty_tree.invoke(surface, "write", {"text": "a"}))
        await settle()
        assert await faulty_tree.invoke(other, "write", {"text": "b"}) == {"written": 1}
        assert not blocked.done()

        gate.set()
        await blocked

    async def test_close_waits_for_in_flight_then_queued_sees_not_found(
        self, faulty_tree: SessionTreeManager, faulty_driver: FaultyDriver
    ) -> None:
        """Close waits for the running operation; operations queued behind it fail."""
        engine, _, surface = await build_chain(faulty_tree)
        gate = faulty_driver.gates["s"] = asyncio.Event()

        running = asyncio.create_task(faulty_tree.invoke(surface, "write", {"text": "a"}))
        await settle()
        closing = asyncio.create_task(faulty_tree.close(engine))
        await settle()
        queued = asyncio.create_task(faulty_tree.invoke(surface, "read"))
        await settle()

        assert not closing.done()
        gate.set()

        assert await running == {"written": 1}
        result = await closing
        assert surface in result.closed_ids
        with pytest.raises(NotFound):
            await queued

        close_index = faulty_driver.calls.index(("close", "s"))
        assert faulty_driver.calls.index(("write:end", "s")) < close_index

    async def test_create_child_during_close_not_orphaned(
        self, faulty_tree: SessionTreeManager, faulty_driver: FaultyDriver
    ) -> None:
        """A child creation racing a close never leaves a dangling entry."""
        engine, context, surface = await build_chain(faulty_tree)
        gate = faulty_driver.gates["s"] = asyncio.Event()

        running = asyncio.create_task(faulty_tree.invoke(surface, "write", {"text": "a"}))
        await settle()
        closing = asyncio.create_task(faulty_tree.close(engine))
        creating = asyncio.create_task(faulty_tree.create_child(context, {}))
        await settle()
        gate.set()

        await running
        await closing
        try:
            await creating
        except ParentNotFound:
            pass

        nodes = flatten(faulty_tree.list())
        listed = {node["id"] for node in nodes}
        for node in nodes:
            assert node["parentId"] is None or node["parentId"] in listed
        assert not faulty_tree.exists(context)


class TestDriverTimeouts:
    """Test timeout wrapping."""

    async def test_timeout_error_wrapped(self, tree: SessionTreeManager, monkeypatch: pytest.MonkeyPatch) -> None:
        """A TimeoutError from the driver becomes DriverTimeout."""
        _, _, surface = await build_chain(tree)

        async def slow(*args: Any) -> Any:
            raise TimeoutError

        monkeypatch.setattr(tree.driver, "invoke", slow)
        with pytest.raises(DriverTimeout):
            await tree.invoke(surface, "read")
