"""Driver adapters for controlled programs."""

from ctlbridge.drivers.browser import BrowserDriver
from ctlbridge.drivers.memory import MemoryDriver
from ctlbridge.drivers.neovim import NeovimDriver
from ctlbridge.drivers.protocol import DriverAdapter, NoParams, OpParams, parse_params
from ctlbridge.drivers.tmux import TmuxDriver

__all__ = [
    "BrowserDriver",
    "DriverAdapter",
    "MemoryDriver",
    "NeovimDriver",
    "NoParams",
    "OpParams",
    "TmuxDriver",
    "parse_params",
]
