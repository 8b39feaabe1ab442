"""Bidirectional byte streams backed by a pseudo-terminal.

An interactive tmux attach needs a real TTY on the client side, so the client
(`docker exec -it ... tmux attach`) is spawned on the slave end of a fresh pty
and the runtime talks to the master end. Reads are event-driven through the
loop's reader callbacks and always bounded by a timeout.
"""

from __future__ import annotations

import asyncio
import errno
import fcntl
import logging
import os
import pty
import struct
import termios
from typing import Optional, Protocol, runtime_checkable

from ciab.constants import ATTACH_READ_CHUNK, SUBPROCESS_TIMEOUT_QUICK
from ciab.core.process_utils import SubprocessTimeoutError, wait_with_timeout
from ciab.core.resources import PtyHandle

logger = logging.getLogger(__name__)

_EOF = b""


@runtime_checkable
class DuplexByteStream(Protocol):
    """Live byte channel to a multiplexer session."""

    @property
    def closed(self) -> bool: ...

    async def read(self, timeout: float) -> Optional[bytes]:
        """Next chunk of output; None if nothing arrived within `timeout`, b"" at EOF."""
        ...

    async def write(self, data: bytes) -> None: ...

    def resize(self, cols: int, rows: int) -> None: ...

    async def close(self) -> None: ...


def set_winsize(fd: int, cols: int, rows: int) -> None:
    """Set the window size of a terminal fd (TIOCSWINSZ)."""
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


class PtyProcessStream:
    """DuplexByteStream over the master side of a pty running a client process."""

    def __init__(self, handle: PtyHandle) -> None:
        self.handle = handle
        self._queue: asyncio.Queue[bytes] = asyncio.Queue()
        self._eof = False
        self._reading = False

    @classmethod
    async def spawn(cls, argv: list[str], *, name: str, cols: int, rows: int) -> "PtyProcessStream":
        """Start `argv` on a new pty and return a stream to it.

        Raises:
            FileNotFoundError: If argv[0] is not on the host.
            OSError: If no pty could be allocated.
        """
        master_fd, slave_fd = pty.openpty()
        try:
            set_winsize(slave_fd, cols, rows)
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
            )
        except BaseException:
            os.close(master_fd)
            os.close(slave_fd)
            raise
        os.close(slave_fd)
        os.set_blocking(master_fd, False)

        handle = PtyHandle(name, master_fd=master_fd, process=process)
        stream = cls(handle)
        handle.bind_release(stream._teardown)
        stream._start_reading()
        logger.debug("Spawned pty client for %s (pid=%s, fd=%d)", name, process.pid, master_fd)
        return stream

    @property
    def closed(self) -> bool:
        return self.handle.released or self._eof

    def _start_reading(self) -> None:
        asyncio.get_running_loop().add_reader(self.handle.master_fd, self._on_readable)
        self._reading = True

    def _stop_reading(self) -> None:
        if self._reading:
            asyncio.get_running_loop().remove_reader(self.handle.master_fd)
            self._reading = False

    def _on_readable(self) -> None:
        try:
            data = os.read(self.handle.master_fd, ATTACH_READ_CHUNK)
        except BlockingIOError:
            return
        except OSError as e:
            # EIO: every slave fd is closed, i.e. the client exited
            if e.errno != errno.EIO:
                logger.warning("pty read failed for %s: %s", self.handle.name, e)
            data = _EOF
        if not data:
            self._stop_reading()
        self._queue.put_nowait(data)

    async def read(self, timeout: float) -> Optional[bytes]:
        if self._eof:
            return _EOF
        try:
            data = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        if not data:
            self._eof = True
        return data

    async def write(self, data: bytes, timeout: float = SUBPROCESS_TIMEOUT_QUICK) -> None:
        """Write all of `data`, yielding while the pty buffer is full.

        Raises:
            BrokenPipeError: If the stream is closed.
            TimeoutError: If the client stopped draining input for `timeout` seconds.
        """
        if self.closed:
            raise BrokenPipeError(f"stream {self.handle.name} is closed")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        view = memoryview(data)
        while view:
            try:
                written = os.write(self.handle.master_fd, view)
            except BlockingIOError:
                if loop.time() > deadline:
                    raise TimeoutError(f"pty write to {self.handle.name} stalled for {timeout}s") from None
                await asyncio.sleep(0.01)
                continue
            view = view[written:]

    def resize(self, cols: int, rows: int) -> None:
        if self.handle.released:
            return
        try:
            set_winsize(self.handle.master_fd, cols, rows)
        except OSError as e:
            logger.debug("pty resize failed for %s: %s", self.handle.name, e)

    async def close(self) -> None:
        await self.handle.release()

    async def _teardown(self) -> None:
        self._stop_reading()
        process = self.handle.process
        try:
            if process.returncode is None:
                try:
                    process.terminate()
                except ProcessLookupError:
                    pass
                try:
                    await wait_with_timeout(process, SUBPROCESS_TIMEOUT_QUICK, f"pty client {self.handle.name} exit")
                except SubprocessTimeoutError:
                    logger.warning("pty client for %s had to be killed", self.handle.name)
        finally:
            os.close(self.handle.master_fd)
        logger.debug("Closed pty stream %s", self.handle.name)
