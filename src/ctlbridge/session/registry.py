"""Keyed store for live resources.

A ResourceRegistry owns the entries of one level of the session tree. It
assigns identifiers, answers lookups and removes entries, but it never
cascades: only the tree manager knows the whole hierarchy.
"""

from __future__ import annotations

import itertools
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ctlbridge.errors import InvalidParent, NotFound


@dataclass
class ResourceEntry:
    """One live resource and the driver handle it owns.

    Attributes:
        id: Opaque identifier, never reused within the process.
        kind: Level tag (e.g. "engine", "context", "surface").
        parent_id: Id of the entry one level up, None for top-level entries.
        handle: Live object returned by the driver; owned by this entry.
        created_at: Creation time (informational).
        metadata: Adapter-specific string attributes (e.g. current URL).
    """

    id: str
    kind: str
    parent_id: str | None
    handle: Any = field(repr=False)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, str] = field(default_factory=dict)

    def snapshot(self) -> dict[str, Any]:
        """Serializable view of the entry, without the handle."""
        return {
            "id": self.id,
            "kind": self.kind,
            "parentId": self.parent_id,
            "createdAt": self.created_at.isoformat(),
            "metadata": dict(self.metadata),
        }


class ResourceRegistry:
    """Id-keyed store for the entries of one tree level.

    Args:
        kind: Default kind for entries created here; also the id prefix.
        parent: Registry holding the parent level, or None for the top level.
    """

    def __init__(self, kind: str, parent: ResourceRegistry | None = None) -> None:
        self.kind = kind
        self.parent = parent
        self._entries: dict[str, ResourceEntry] = {}
        self._counter = itertools.count(1)

    def create(
        self,
        kind: str | None,
        parent_id: str | None,
        handle: Any,
        metadata: dict[str, str] | None = None,
    ) -> str:
        """Register a new entry and return its id.

        Raises:
            InvalidParent: If parent_id is set but not live in the parent
                registry, or if this registry has no parent level.
        """
        if parent_id is not None:
            if self.parent is None or parent_id not in self.parent:
                raise InvalidParent(f"Parent {parent_id} not found")
        elif self.parent is not None:
            raise InvalidParent(f"{self.kind} entries require a parent")

        kind = kind or self.kind
        entry_id = f"{kind}-{next(self._counter)}"
        self._entries[entry_id] = ResourceEntry(
            id=entry_id,
            kind=kind,
            parent_id=parent_id,
            handle=handle,
            metadata=dict(metadata or {}),
        )
        return entry_id

    def get(self, entry_id: str) -> ResourceEntry:
        """Look up an entry.

        Raises:
            NotFound: If the id is not live.
        """
        entry = self._entries.get(entry_id)
        if entry is None:
            raise NotFound(f"{self.kind} {entry_id} not found")
        return entry

    def delete(self, entry_id: str) -> list[str]:
        """Remove an entry. Unknown ids are a no-op.

        Returns:
            The ids actually removed (empty or a single id).
        """
        if self._entries.pop(entry_id, None) is None:
            return []
        return [entry_id]

    def list_by_parent(self, parent_id: str | None) -> list[ResourceEntry]:
        """Entries whose parent is parent_id, in insertion order."""
        return [e for e in self._entries.values() if e.parent_id == parent_id]

    def entries(self) -> list[ResourceEntry]:
        """All entries in insertion order."""
        return list(self._entries.values())

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._entries

    def __iter__(self) -> Iterator[ResourceEntry]:
        return iter(list(self._entries.values()))

    def __len__(self) -> int:
        return len(self._entries)
