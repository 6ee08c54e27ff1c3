"""Terminal multiplexer driver: session -> window -> pane via the tmux CLI.

Handles carry tmux's own stable ids ($N, @N, %N) rather than names or
indexes, so renames and reordering never retarget a handle.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import Field

from ctlbridge.drivers.process import CommandResult, run_command
from ctlbridge.drivers.protocol import NoParams, OpParams
from ctlbridge.errors import DriverFailure, InvalidParams
from ctlbridge.logging import get_logger

log = get_logger("drivers.tmux")

# Fields reported by the info operation, per kind: (key, tmux format variable, type)
INFO_FIELDS: dict[str, list[tuple[str, str, type]]] = {
    "session": [
        ("id", "session_id", str),
        ("name", "session_name", str),
        ("windowCount", "session_windows", int),
        ("attached", "session_attached", bool),
        ("created", "session_created", int),
    ],
    "window": [
        ("id", "window_id", str),
        ("index", "window_index", int),
        ("name", "window_name", str),
        ("paneCount", "window_panes", int),
        ("active", "window_active", bool),
    ],
    "pane": [
        ("id", "pane_id", str),
        ("index", "pane_index", int),
        ("command", "pane_current_command", str),
        ("pid", "pane_pid", int),
        ("width", "pane_width", int),
        ("height", "pane_height", int),
        ("active", "pane_active", bool),
        ("currentPath", "pane_current_path", str),
        ("title", "pane_title", str),
    ],
}

KILL_COMMANDS = {
    "session": "kill-session",
    "window": "kill-window",
    "pane": "kill-pane",
}

NO_SERVER_MARKERS = ("no server running", "error connecting to", "no sessions")


def info_format(kind: str) -> str:
    """tmux -F format string for a kind's info fields, tab separated."""
    return "\t".join(f"#{{{var}}}" for _, var, _ in INFO_FIELDS[kind])


def parse_info(kind: str, line: str) -> dict[str, Any]:
    """Parse one line produced by info_format(kind)."""
    values = line.split("\t")
    fields = INFO_FIELDS[kind]
    if len(values) != len(fields):
        raise DriverFailure(f"Unexpected tmux output for {kind}: {line!r}")

    info: dict[str, Any] = {}
    for (key, _, kind_type), raw in zip(fields, values):
        if kind_type is bool:
            info[key] = raw == "1"
        elif kind_type is int:
            info[key] = int(raw) if raw.lstrip("-").isdigit() else None
        else:
            info[key] = raw
    if kind == "session" and info.get("created") is not None:
        info["created"] = datetime.fromtimestamp(info["created"], tz=timezone.utc).isoformat()
    return info


@dataclass
class TmuxTarget:
    """A tmux object addressed by its stable id."""

    kind: str
    target: str
    name: str | None = None


class SessionOptions(OpParams):
    name: str | None = None
    directory: str | None = None
    command: str | None = None
    width: int | None = Field(default=None, ge=1)
    height: int | None = Field(default=None, ge=1)


class WindowOptions(OpParams):
    name: str | None = None
    directory: str | None = None
    command: str | None = None


class PaneOptions(OpParams):
    direction: Literal["horizontal", "vertical"] = "horizontal"
    percentage: int | None = Field(default=None, ge=1, le=99)
    directory: str | None = None
    command: str | None = None


class SendArgs(OpParams):
    command: str
    enter: bool = True


class ReadArgs(OpParams):
    lines: int = Field(default=100, ge=1)
    start_line: int | None = Field(default=None, alias="startLine", ge=0)


class ListSessionsArgs(OpParams):
    include_details: bool = Field(default=False, alias="includeDetails")


class TmuxDriver:
    """Drive a tmux server through its command line."""

    name = "tmux"
    levels = ("session", "window", "pane")
    options = {
        "session": SessionOptions,
        "window": WindowOptions,
        "pane": PaneOptions,
    }
    operations = {
        "session": {"info": NoParams},
        "window": {"info": NoParams},
        "pane": {
            "send": SendArgs,
            "read": ReadArgs,
            "info": NoParams,
        },
    }
    standalone = {"list_sessions": ListSessionsArgs}

    def __init__(self, binary: str = "tmux", command_timeout: float | None = 10.0) -> None:
        """Initialize the driver.

        Args:
            binary: tmux executable.
            command_timeout: Seconds allowed for each tmux invocation.
        """
        self._binary = binary
        self._timeout = command_timeout

    async def _tmux(self, *args: str, check: bool = True) -> CommandResult:
        return await run_command(self._binary, *args, timeout=self._timeout, check=check)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def spawn_top(self, options: OpParams) -> TmuxTarget:
        assert isinstance(options, SessionOptions)
        args = ["new-session", "-d", "-P", "-F", "#{session_id}"]
        if options.name:
            args += ["-s", options.name]
        if options.directory:
            args += ["-c", options.directory]
        if options.width:
            args += ["-x", str(options.width)]
        if options.height:
            args += ["-y", str(options.height)]
        if options.command:
            args.append(options.command)

        result = await self._tmux(*args)
        return TmuxTarget("session", result.stdout.strip(), options.name)

    async def spawn_child(self, parent_handle: TmuxTarget, kind: str, options: OpParams) -> TmuxTarget:
        if kind == "window":
            assert isinstance(options, WindowOptions)
            args = ["new-window", "-d", "-P", "-F", "#{window_id}", "-t", f"{parent_handle.target}:"]
            if options.name:
                args += ["-n", options.name]
            if options.directory:
                args += ["-c", options.directory]
            if options.command:
                args.append(options.command)
            result = await self._tmux(*args)
            return TmuxTarget("window", result.stdout.strip(), options.name)

        if kind == "pane":
            assert isinstance(options, PaneOptions)
            # tmux names splits by the divider: -h places panes side by side
            args = ["split-window", "-d", "-P", "-F", "#{pane_id}", "-t", parent_handle.target]
            args.append("-h" if options.direction == "vertical" else "-v")
            if options.percentage:
                args += ["-l", f"{options.percentage}%"]
            if options.directory:
                args += ["-c", options.directory]
            if options.command:
                args.append(options.command)
            result = await self._tmux(*args)
            return TmuxTarget("pane", result.stdout.strip())

        raise InvalidParams(f"tmux has no {kind} level")

    async def close(self, handle: TmuxTarget) -> None:
        await self._tmux(KILL_COMMANDS[handle.kind], "-t", handle.target)

    def describe(self, handle: TmuxTarget) -> dict[str, str]:
        metadata = {"target": handle.target}
        if handle.name:
            metadata["name"] = handle.name
        return metadata

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def invoke(self, handle: TmuxTarget, op: str, args: OpParams) -> Any:
        if op == "info":
            return await self._info(handle)
        if op == "send":
            assert isinstance(args, SendArgs)
            return await self._send(handle, args)
        if op == "read":
            assert isinstance(args, ReadArgs)
            return await self._read(handle, args)
        raise InvalidParams(f"Unknown tmux operation: {op}")

    async def _info(self, handle: TmuxTarget) -> dict[str, Any]:
        result = await self._tmux("display-message", "-p", "-t", handle.target, info_format(handle.kind))
        return parse_info(handle.kind, result.stdout)

    async def _send(self, handle: TmuxTarget, args: SendArgs) -> dict[str, Any]:
        # -l sends the text literally, so key names inside it are not interpreted
        await self._tmux("send-keys", "-t", handle.target, "-l", "--", args.command)
        if args.enter:
            await self._tmux("send-keys", "-t", handle.target, "Enter")
        return {"target": handle.target, "command": args.command, "sentEnter": args.enter}

    async def _read(self, handle: TmuxTarget, args: ReadArgs) -> dict[str, Any]:
        capture = ["capture-pane", "-p", "-t", handle.target]
        if args.start_line is not None:
            capture += ["-S", str(args.start_line), "-E", str(args.start_line + args.lines - 1)]
        else:
            capture += ["-S", f"-{args.lines}"]

        result = await self._tmux(*capture)
        return {
            "target": handle.target,
            "content": result.stdout,
            "lines": len(result.lines),
        }

    # -------------------------------------------------------------------------
    # Standalone
    # -------------------------------------------------------------------------

    async def run_standalone(self, op: str, args: OpParams) -> Any:
        if op == "list_sessions":
            assert isinstance(args, ListSessionsArgs)
            return await self._list_sessions(args.include_details)
        raise InvalidParams(f"Unknown tmux operation: {op}")

    async def _list_sessions(self, include_details: bool) -> dict[str, Any]:
        result = await self._tmux("list-sessions", "-F", info_format("session"), check=False)
        if not result.ok:
            if any(marker in result.stderr for marker in NO_SERVER_MARKERS):
                log.debug("No tmux server: %s", result.stderr)
                return {"sessions": [], "message": "No tmux server running"}
            raise DriverFailure(f"tmux list-sessions: {result.stderr or result.returncode}")

        sessions = [parse_info("session", line) for line in result.lines]
        if include_details:
            for session in sessions:
                session["windows"] = await self._list_windows(session["id"])
        return {"sessions": sessions}

    async def _list_windows(self, session_id: str) -> list[dict[str, Any]]:
        result = await self._tmux("list-windows", "-t", session_id, "-F", info_format("window"))
        windows = [parse_info("window", line) for line in result.lines]
        for window in windows:
            panes = await self._tmux("list-panes", "-t", window["id"], "-F", info_format("pane"))
            window["panes"] = [parse_info("pane", line) for line in panes.lines]
        return windows
