"""Resource bookkeeping: registries, per-id locks and the session tree."""

from ctlbridge.session.locks import KeyedLocks
from ctlbridge.session.registry import ResourceEntry, ResourceRegistry
from ctlbridge.session.tree import CloseResult, SessionTreeManager

__all__ = [
    "CloseResult",
    "KeyedLocks",
    "ResourceEntry",
    "ResourceRegistry",
    "SessionTreeManager",
]
