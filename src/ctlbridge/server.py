"""Composition root: driver factory, serve loop and signal wiring."""

from __future__ import annotations

import asyncio
import signal
import sys

from ctlbridge.config.schema import Config, DriversConfig
from ctlbridge.drivers.browser import BrowserDriver
from ctlbridge.drivers.memory import MemoryDriver
from ctlbridge.drivers.neovim import NeovimDriver
from ctlbridge.drivers.protocol import DriverAdapter
from ctlbridge.drivers.tmux import TmuxDriver
from ctlbridge.logging import get_logger
from ctlbridge.session.tree import SessionTreeManager
from ctlbridge.transport.dispatcher import RequestDispatcher
from ctlbridge.transport.loop import ByteTransport, TransportLoop
from ctlbridge.transport.stdio import StdioTransport

log = get_logger("server")

DRIVER_NAMES = ("memory", "tmux", "neovim", "browser")

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def create_driver(name: str, config: DriversConfig | None = None) -> DriverAdapter:
    """Instantiate a driver by name with its configured settings.

    Raises:
        ValueError: If the name is not a known driver.
    """
    config = config or DriversConfig()
    if name == "memory":
        return MemoryDriver()
    if name == "tmux":
        return TmuxDriver(
            binary=config.tmux.binary,
            command_timeout=config.tmux.command_timeout,
        )
    if name == "neovim":
        return NeovimDriver(
            binary=config.neovim.binary,
            socket_dir=config.neovim.socket_dir,
            startup_timeout=config.neovim.startup_timeout,
            command_timeout=config.neovim.command_timeout,
        )
    if name == "browser":
        return BrowserDriver(
            browser=config.browser.browser,
            headless=config.browser.headless,
            operation_timeout=config.browser.operation_timeout,
            screenshot_dir=config.browser.screenshot_dir,
        )
    raise ValueError(f"Unknown driver {name!r} (choose from {', '.join(DRIVER_NAMES)})")


def build_dispatcher(config: Config, driver_name: str | None = None) -> RequestDispatcher:
    """Driver, tree and dispatcher for one serve session."""
    driver = create_driver(driver_name or config.drivers.default, config.drivers)
    tree = SessionTreeManager(driver, close_timeout=config.shutdown.close_timeout)
    return RequestDispatcher(tree)


def build_loop(
    config: Config,
    dispatcher: RequestDispatcher,
    transport: ByteTransport,
) -> TransportLoop:
    return TransportLoop(
        dispatcher,
        transport,
        concurrent=config.transport.concurrent,
        max_message_size=config.transport.max_message_size,
        read_chunk_size=config.transport.read_chunk_size,
    )


def _install_signal_handlers(loop: TransportLoop) -> list[signal.Signals]:
    if sys.platform == "win32":
        # No add_signal_handler on Windows; Ctrl+C arrives as KeyboardInterrupt
        return []
    event_loop = asyncio.get_running_loop()
    for sig in SHUTDOWN_SIGNALS:
        event_loop.add_signal_handler(sig, loop.request_stop)
    return list(SHUTDOWN_SIGNALS)


def _remove_signal_handlers(installed: list[signal.Signals]) -> None:
    event_loop = asyncio.get_running_loop()
    for sig in installed:
        event_loop.remove_signal_handler(sig)


async def serve(
    config: Config,
    driver_name: str | None = None,
    transport: ByteTransport | None = None,
    *,
    dispatcher: RequestDispatcher | None = None,
) -> int:
    """Serve requests until end of input or a shutdown signal.

    Args:
        config: Loaded configuration.
        driver_name: Driver to use (default: config.drivers.default).
        transport: Byte transport (default: stdin/stdout).
        dispatcher: Prebuilt dispatcher; driver_name is then ignored.

    Returns:
        Exit code: 0 on clean shutdown, 1 if a top-level resource failed
        to close.
    """
    if dispatcher is None:
        dispatcher = build_dispatcher(config, driver_name)
    if transport is None:
        transport = await StdioTransport.from_stdio()
    loop = build_loop(config, dispatcher, transport)
    log.info("Serving driver %s", dispatcher.tree.driver.name)

    installed = _install_signal_handlers(loop)
    try:
        code = await loop.run()
    finally:
        _remove_signal_handlers(installed)

    log.info("Exiting with code %d", code)
    return code
