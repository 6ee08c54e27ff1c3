"""Command-line interface for ctlbridge."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
from collections.abc import Sequence
from pathlib import Path

from rich.console import Console
from rich.table import Table

from ctlbridge import __version__
from ctlbridge.config import Config, load_config
from ctlbridge.logging import setup_logging

console = Console(stderr=True)

# -v steps up from info (2); -q drops to errors only (0)
DEFAULT_VERBOSITY = 2


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    from ctlbridge.server import DRIVER_NAMES

    parser = argparse.ArgumentParser(
        prog="ctlbridge",
        description="Drive interactive programs over line-delimited JSON-RPC on stdio",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (can be repeated)",
    )
    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Only log errors",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Config file, layered over system, user and project config",
    )

    subparsers = parser.add_subparsers(dest="mode", help="Command")

    serve_parser = subparsers.add_parser(
        "serve",
        help="Serve requests on stdin/stdout",
    )
    serve_parser.add_argument(
        "--driver",
        choices=DRIVER_NAMES,
        help="Driver to serve (default: drivers.default from config)",
    )

    info_parser = subparsers.add_parser(
        "info",
        help="Show a driver's levels and methods",
    )
    info_parser.add_argument(
        "--driver",
        choices=DRIVER_NAMES,
        help="Driver to describe (default: drivers.default from config)",
    )
    info_parser.add_argument(
        "--json",
        action="store_true",
        help="Print server.info as JSON on stdout",
    )

    return parser


def apply_verbosity(config: Config, verbose: int, quiet: bool) -> None:
    """Let command line flags override the configured log level."""
    if quiet:
        config.logging.verbose = 0
    elif verbose:
        config.logging.verbose = min(DEFAULT_VERBOSITY + verbose, 4)


def run_cli(args: Sequence[str]) -> int:
    """Run the CLI with the given arguments."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    if parsed.mode is None:
        parser.print_help()
        return 1

    config = load_config(config_path=parsed.config, cwd=os.getcwd())
    apply_verbosity(config, parsed.verbose, parsed.quiet)
    setup_logging(config.logging)

    if parsed.mode == "serve":
        from ctlbridge.server import build_dispatcher, serve

        try:
            dispatcher = build_dispatcher(config, parsed.driver)
        except ValueError as e:
            console.print(f"[red]{e}[/red]")
            return 2
        try:
            return asyncio.run(serve(config, dispatcher=dispatcher))
        except KeyboardInterrupt:
            return 130
    elif parsed.mode == "info":
        return show_info(config, parsed.driver, as_json=parsed.json)
    else:
        parser.print_help()
        return 1


def show_info(config: Config, driver_name: str | None, *, as_json: bool = False) -> int:
    """Print a driver's method table."""
    from ctlbridge.server import build_dispatcher
    from ctlbridge.transport.dispatcher import describe_server

    try:
        dispatcher = build_dispatcher(config, driver_name)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        return 2

    info = describe_server(dispatcher.tree, dispatcher.methods)
    if as_json:
        print(json.dumps(info, indent=2))
        return 0

    levels = " -> ".join(info["levels"])
    console.print(f"[bold]{info['name']}[/bold] {info['version']}  driver [bold]{info['driver']}[/bold]")
    console.print(f"[dim]Levels: {levels}[/dim]")

    table = Table(title="Methods")
    table.add_column("Method", style="bold")
    table.add_column("Target")
    for method in info["methods"]:
        prefix = method.split(".", 1)[0]
        if prefix in info["levels"]:
            target = prefix
        elif prefix == info["driver"]:
            target = "standalone"
        else:
            target = "server"
        table.add_row(method, target)
    console.print(table)
    return 0
