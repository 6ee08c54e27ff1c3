"""Editor driver: Neovim instances reached through --listen sockets.

Each instance is a single tree level. Operations are evaluated with
`nvim --server <socket> --remote-expr`, so every call is one short-lived
client process and no connection state is held between calls.

An instance is either started here (headless, owned, stopped on close) or
attached to an editor already listening on a socket (left running on close).
"""

from __future__ import annotations

import asyncio
import json
import os
import stat
import tempfile
import time
import uuid
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import Field, model_validator

from ctlbridge.drivers.process import run_command, terminate_process
from ctlbridge.drivers.protocol import NoParams, OpParams
from ctlbridge.errors import DriverFailure, DriverTimeout, InvalidParams
from ctlbridge.logging import get_logger

log = get_logger("drivers.neovim")

SOCKET_POLL_INTERVAL = 0.05


def vim_string(value: str) -> str:
    """Quote a Python string as a Vim single-quoted string literal."""
    return "'" + value.replace("'", "''") + "'"


def vim_json(value: Any) -> str:
    """Vim expression that evaluates to `value` (via json_decode)."""
    return f"json_decode({vim_string(json.dumps(value))})"


@dataclass
class NeovimInstance:
    """A Neovim and the socket it listens on.

    Attributes:
        name: Instance name.
        socket: Server socket path.
        process: The headless process started for this instance; None when
            attached to an editor started elsewhere.
        pid: Editor pid reported at attach time.
    """

    name: str
    socket: str
    process: asyncio.subprocess.Process | None = None
    pid: int | None = None


class InstanceOptions(OpParams):
    name: str | None = None
    socket: str | None = None
    attach: bool = False
    directory: str | None = None
    args: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_attach(self) -> InstanceOptions:
        if self.attach:
            if not self.socket:
                raise ValueError("attach requires a socket")
            if self.directory or self.args:
                raise ValueError("directory and args only apply to started instances")
        return self


class CommandArgs(OpParams):
    command: str


class EvalArgs(OpParams):
    expression: str


class OpenArgs(OpParams):
    file: str
    line: int | None = Field(default=None, ge=1)


class GetContentArgs(OpParams):
    start: int = 0
    end: int = -1


class SetContentArgs(OpParams):
    lines: list[str]
    start: int = 0
    end: int = -1


class InsertArgs(OpParams):
    text: str
    mode: Literal["insert", "append", "newline"] = "insert"


class SaveArgs(OpParams):
    force: bool = False


class SearchArgs(OpParams):
    pattern: str
    backwards: bool = False


class NeovimDriver:
    """Drive Neovim instances, started headless or attached by socket."""

    name = "neovim"
    levels = ("instance",)
    options = {"instance": InstanceOptions}
    operations = {
        "instance": {
            "command": CommandArgs,
            "eval": EvalArgs,
            "open": OpenArgs,
            "buffers": NoParams,
            "current_buffer": NoParams,
            "get_content": GetContentArgs,
            "set_content": SetContentArgs,
            "insert": InsertArgs,
            "save": SaveArgs,
            "search": SearchArgs,
            "selection": NoParams,
        },
    }
    standalone = {"check": NoParams, "list": NoParams}

    def __init__(
        self,
        binary: str = "nvim",
        socket_dir: str | None = None,
        startup_timeout: float = 5.0,
        command_timeout: float | None = 10.0,
    ) -> None:
        """Initialize the driver.

        Args:
            binary: Neovim executable.
            socket_dir: Directory for generated socket paths (default: system temp).
            startup_timeout: Seconds to wait for a new instance's socket.
            command_timeout: Seconds allowed for each remote call.
        """
        self._binary = binary
        self._socket_dir = socket_dir or tempfile.gettempdir()
        self._startup_timeout = startup_timeout
        self._timeout = command_timeout

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def spawn_top(self, options: OpParams) -> NeovimInstance:
        assert isinstance(options, InstanceOptions)
        if options.attach:
            return await self._attach(options)

        name = options.name or "default"
        socket = options.socket or os.path.join(
            self._socket_dir, f"ctlbridge-nvim-{name}-{uuid.uuid4().hex[:8]}.sock"
        )
        if os.path.exists(socket):
            raise DriverFailure(f"Socket already in use: {socket} (set attach to use it)")

        try:
            process = await asyncio.create_subprocess_exec(
                self._binary,
                "--headless",
                "--listen",
                socket,
                *options.args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                cwd=options.directory,
            )
        except FileNotFoundError as e:
            raise DriverFailure(f"Command not found: {self._binary}") from e

        try:
            await self._wait_for_socket(process, socket)
        except BaseException:
            if process.returncode is None:
                await terminate_process(process)
            raise
        log.debug("Neovim %s listening on %s (pid %s)", name, socket, process.pid)
        return NeovimInstance(name=name, socket=socket, process=process)

    async def _attach(self, options: InstanceOptions) -> NeovimInstance:
        assert options.socket is not None
        if not os.path.exists(options.socket):
            raise DriverFailure(f"No Neovim listening on {options.socket}")

        handle = NeovimInstance(
            name=options.name or os.path.basename(options.socket),
            socket=options.socket,
        )
        pid = (await self._expr(handle, "getpid()")).strip()
        handle.pid = int(pid) if pid.isdigit() else None
        log.debug("Attached to Neovim on %s (pid %s)", handle.socket, handle.pid)
        return handle

    async def _wait_for_socket(self, process: asyncio.subprocess.Process, socket: str) -> None:
        deadline = time.monotonic() + self._startup_timeout
        while not os.path.exists(socket):
            if process.returncode is not None:
                raise DriverFailure(f"{self._binary} exited with code {process.returncode}")
            if time.monotonic() >= deadline:
                raise DriverTimeout(f"No socket at {socket} after {self._startup_timeout}s")
            await asyncio.sleep(SOCKET_POLL_INTERVAL)

    async def spawn_child(self, parent_handle: Any, kind: str, options: OpParams) -> Any:
        raise InvalidParams("neovim instances cannot have children")

    async def close(self, handle: NeovimInstance) -> None:
        if handle.process is None:
            log.debug("Detached from Neovim on %s", handle.socket)
            return
        await terminate_process(handle.process)
        with suppress(FileNotFoundError):
            os.unlink(handle.socket)

    def describe(self, handle: NeovimInstance) -> dict[str, str]:
        if handle.process is None:
            return {
                "name": handle.name,
                "socket": handle.socket,
                "pid": "" if handle.pid is None else str(handle.pid),
                "attached": "true",
            }
        return {
            "name": handle.name,
            "socket": handle.socket,
            "pid": str(handle.process.pid),
        }

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def _expr(self, handle: NeovimInstance, expression: str) -> str:
        if handle.process is not None and handle.process.returncode is not None:
            raise DriverFailure(f"Neovim {handle.name} exited with code {handle.process.returncode}")
        result = await run_command(
            self._binary,
            "--server",
            handle.socket,
            "--remote-expr",
            expression,
            timeout=self._timeout,
        )
        return result.stdout

    async def _expr_json(self, handle: NeovimInstance, expression: str) -> Any:
        raw = await self._expr(handle, f"json_encode({expression})")
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise DriverFailure(f"Unexpected reply from Neovim: {raw[:200]!r}") from e

    async def invoke(self, handle: NeovimInstance, op: str, args: OpParams) -> Any:
        if op == "command":
            assert isinstance(args, CommandArgs)
            output = await self._expr(handle, f"execute({vim_string(args.command)})")
            return {"command": args.command, "output": output.strip("\n")}

        if op == "eval":
            assert isinstance(args, EvalArgs)
            return {"result": await self._expr(handle, args.expression)}

        if op == "open":
            assert isinstance(args, OpenArgs)
            await self._expr(handle, f"execute('edit ' . fnameescape({vim_string(args.file)}))")
            if args.line:
                await self._expr(handle, f"cursor({args.line}, 1)")
            return {"file": args.file, "line": args.line}

        if op == "buffers":
            buffers = await self._expr_json(
                handle,
                "map(getbufinfo({'buflisted': 1}), {_, b -> {'bufnr': b.bufnr, "
                "'name': b.name, 'changed': b.changed, 'lines': b.linecount}})",
            )
            return {"buffers": buffers}

        if op == "current_buffer":
            return await self._expr_json(
                handle,
                "{'bufnr': bufnr('%'), 'name': bufname('%'), 'lines': line('$'), "
                "'modified': &modified, 'filetype': &filetype, 'cursor': [line('.'), col('.')]}",
            )

        if op == "get_content":
            assert isinstance(args, GetContentArgs)
            lines = await self._expr_json(
                handle, f"nvim_buf_get_lines(0, {args.start}, {args.end}, v:false)"
            )
            return {"lines": lines, "start": args.start, "end": args.end}

        if op == "set_content":
            assert isinstance(args, SetContentArgs)
            # nvim_buf_set_lines returns nothing; index a list to get a line count back
            total = await self._expr(
                handle,
                f"[nvim_buf_set_lines(0, {args.start}, {args.end}, v:false, "
                f"{vim_json(args.lines)}), line('$')][1]",
            )
            return {"lines": len(args.lines), "total": int(total or 0)}

        if op == "insert":
            assert isinstance(args, InsertArgs)
            kind = "l" if args.mode == "newline" else "c"
            after = "v:false" if args.mode == "insert" else "v:true"
            line = await self._expr(
                handle,
                f"[nvim_put({vim_json(args.text.split(chr(10)))}, '{kind}', {after}, v:true), line('.')][1]",
            )
            return {"inserted": len(args.text), "mode": args.mode, "line": int(line or 0)}

        if op == "save":
            assert isinstance(args, SaveArgs)
            await self._expr(handle, f"execute({vim_string('write!' if args.force else 'write')})")
            name = await self._expr(handle, "bufname('%')")
            return {"saved": True, "file": name}

        if op == "search":
            assert isinstance(args, SearchArgs)
            flags = "bw" if args.backwards else "w"
            line = int(await self._expr(handle, f"search({vim_string(args.pattern)}, '{flags}')") or 0)
            return {"pattern": args.pattern, "line": line, "found": line > 0}

        if op == "selection":
            # Marks '< and '> hold the last visual selection
            return await self._expr_json(
                handle,
                "{'lines': getline(\"'<\", \"'>\"), 'start': line(\"'<\"), 'end': line(\"'>\")}",
            )

        raise InvalidParams(f"Unknown neovim operation: {op}")

    # -------------------------------------------------------------------------
    # Standalone
    # -------------------------------------------------------------------------

    async def run_standalone(self, op: str, args: OpParams) -> Any:
        if op == "check":
            return await self._check()
        if op == "list":
            return self._list_sockets()
        raise InvalidParams(f"Unknown neovim operation: {op}")

    def _socket_dirs(self) -> list[str]:
        dirs = [self._socket_dir, tempfile.gettempdir(), "/tmp"]
        runtime = os.environ.get("XDG_RUNTIME_DIR")
        if runtime:
            dirs.append(runtime)
        return list(dict.fromkeys(dirs))

    def _list_sockets(self) -> dict[str, Any]:
        """Find Neovim server sockets in the usual directories."""
        instances = []
        for directory in self._socket_dirs():
            try:
                names = sorted(os.listdir(directory))
            except OSError:
                continue
            for name in names:
                if "nvim" not in name:
                    continue
                path = os.path.join(directory, name)
                try:
                    mode = os.stat(path).st_mode
                except OSError:
                    continue
                if stat.S_ISSOCK(mode):
                    instances.append({"socket": path, "name": name})
        return {"instances": instances, "count": len(instances)}

    async def _check(self) -> dict[str, Any]:
        try:
            result = await run_command(self._binary, "--version", timeout=self._timeout)
        except DriverFailure as e:
            return {"installed": False, "error": e.message}
        version = result.lines[0] if result.lines else ""
        return {"installed": True, "version": version}
