"""Async subprocess helper for drivers that talk to a program's CLI."""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Sequence
from dataclasses import dataclass

from ctlbridge.errors import DriverFailure, DriverTimeout
from ctlbridge.logging import TRACE, get_logger

log = get_logger("drivers.process")


@dataclass
class CommandResult:
    """Result of running a command.

    Attributes:
        cmd: The argv that was executed.
        stdout: Decoded standard output, trailing newline stripped.
        stderr: Decoded standard error, trailing newline stripped.
        returncode: Process exit code.
        duration_ms: Execution duration in milliseconds.
    """

    cmd: Sequence[str]
    stdout: str
    stderr: str
    returncode: int
    duration_ms: float

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def lines(self) -> list[str]:
        return self.stdout.splitlines() if self.stdout else []


async def run_command(
    *args: str,
    timeout: float | None = 10.0,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    check: bool = True,
) -> CommandResult:
    """Run a command to completion.

    Args:
        *args: Program and arguments (no shell involved).
        timeout: Seconds before the process is killed. None for no timeout.
        cwd: Working directory.
        env: Additional environment variables.
        check: Raise DriverFailure on a non-zero exit code.

    Raises:
        DriverFailure: If the program is missing, not executable, or exits
            non-zero while `check` is set.
        DriverTimeout: If the timeout expires.
    """
    start_time = time.perf_counter()
    process_env = os.environ.copy()
    if env:
        process_env.update(env)

    log.log(TRACE, "exec %s", " ".join(args))
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=process_env,
        )
    except FileNotFoundError as e:
        raise DriverFailure(f"Command not found: {args[0]}") from e
    except PermissionError as e:
        raise DriverFailure(f"Permission denied: {args[0]}") from e
    except OSError as e:
        raise DriverFailure(f"OS error running {args[0]}: {e}") from e

    try:
        if timeout is not None:
            stdout_data, stderr_data = await asyncio.wait_for(
                process.communicate(), timeout=timeout
            )
        else:
            stdout_data, stderr_data = await process.communicate()
    except asyncio.TimeoutError as e:
        try:
            process.kill()
            await process.wait()
        except ProcessLookupError:
            pass  # Process already gone
        raise DriverTimeout(f"{args[0]} timed out after {timeout}s") from e

    result = CommandResult(
        cmd=list(args),
        stdout=stdout_data.decode("utf-8", errors="replace").rstrip("\n"),
        stderr=stderr_data.decode("utf-8", errors="replace").rstrip("\n"),
        returncode=process.returncode if process.returncode is not None else -1,
        duration_ms=(time.perf_counter() - start_time) * 1000,
    )
    if check and not result.ok:
        detail = result.stderr or result.stdout or f"exit code {result.returncode}"
        raise DriverFailure(f"{' '.join(args[:2])}: {detail}")
    return result


async def terminate_process(
    process: asyncio.subprocess.Process,
    terminate_timeout: float = 3.0,
) -> None:
    """Stop a child process: terminate, then kill if it lingers."""
    if process.returncode is not None:
        return

    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=terminate_timeout)
        return
    except asyncio.TimeoutError:
        pass

    process.kill()
    await process.wait()
