"""Bounded subprocess helpers.

Every process the runtime spawns (container engine CLI, tmux through
`docker exec`) is awaited through these helpers so no coroutine can block
forever on a hung child. On timeout the child is killed and reaped before
SubprocessTimeoutError is raised.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from ciab.constants import SUBPROCESS_TIMEOUT_DEFAULT, SUBPROCESS_TIMEOUT_QUICK
from ciab.core.errors import OperationTimeoutError

logger = logging.getLogger(__name__)

__all__ = [
    "SUBPROCESS_TIMEOUT_DEFAULT",
    "SUBPROCESS_TIMEOUT_QUICK",
    "ProcessOutput",
    "SubprocessTimeoutError",
    "communicate_with_timeout",
    "run_command",
    "wait_with_timeout",
]


class SubprocessTimeoutError(OperationTimeoutError):
    """A subprocess did not finish within its bound and was killed."""

    def __init__(self, operation: str, timeout: float, pid: Optional[int]) -> None:
        super().__init__(operation, timeout)
        self.pid = pid


@dataclass(frozen=True)
class ProcessOutput:
    """Captured result of a finished process."""

    returncode: int
    stdout: bytes
    stderr: bytes

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace").strip()


def _kill_quietly(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        # Already exited between the timeout and the kill
        pass


async def wait_with_timeout(process: asyncio.subprocess.Process, timeout: float, operation: str) -> None:
    """Wait for a process to exit, killing it on timeout.

    Raises:
        SubprocessTimeoutError: If the process did not exit in time.
    """
    try:
        await asyncio.wait_for(process.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("%s timed out after %.1fs (pid=%s), killing", operation, timeout, process.pid)
        _kill_quietly(process)
        await process.wait()
        raise SubprocessTimeoutError(operation, timeout, process.pid) from None


async def communicate_with_timeout(
    process: asyncio.subprocess.Process,
    input_data: Optional[bytes],
    timeout: float,
    operation: str,
) -> tuple[bytes, bytes]:
    """communicate() with a bound, killing the process on timeout.

    Raises:
        SubprocessTimeoutError: If the process did not finish in time.
    """
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(input_data), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("%s timed out after %.1fs (pid=%s), killing", operation, timeout, process.pid)
        _kill_quietly(process)
        await process.wait()
        raise SubprocessTimeoutError(operation, timeout, process.pid) from None
    return stdout or b"", stderr or b""


async def run_command(
    argv: list[str],
    *,
    timeout: float = SUBPROCESS_TIMEOUT_DEFAULT,
    operation: Optional[str] = None,
    input_data: Optional[bytes] = None,
) -> ProcessOutput:
    """Run a command to completion and capture its output.

    Raises:
        FileNotFoundError: If argv[0] does not exist on the host.
        SubprocessTimeoutError: If the command exceeded `timeout`.
    """
    op = operation or " ".join(argv[:3])
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.PIPE if input_data is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await communicate_with_timeout(process, input_data, timeout, op)
    except asyncio.CancelledError:
        _kill_quietly(process)
        raise
    returncode = process.returncode if process.returncode is not None else -1
    return ProcessOutput(returncode=returncode, stdout=stdout, stderr=stderr)
