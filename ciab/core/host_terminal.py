"""Host terminal adapters used while a session is attached.

Attaching hands the physical terminal to the remote tmux session. The
adapter suspends whatever owns the terminal (alternate-screen rendering, a
Textual app), switches the input side to raw passthrough, and restores the
exact prior termios mode when the `foreground()` context exits, however it
exits.
"""

from __future__ import annotations

import asyncio
import logging
import os
import select
import signal
import termios
import time
import tty
from contextlib import ExitStack, asynccontextmanager
from typing import TYPE_CHECKING, AsyncIterator, Callable, Optional, Protocol, runtime_checkable

from textual.app import SuspendNotSupported

from ciab.constants import (
    ALT_SCREEN_ENTER,
    ALT_SCREEN_LEAVE,
    ATTACH_READ_CHUNK,
    CLEAR_SCREEN,
    CURSOR_SHOW,
    SUBPROCESS_TIMEOUT_QUICK,
)
from ciab.core.errors import ResourceUnavailableError

if TYPE_CHECKING:
    from textual.app import App

logger = logging.getLogger(__name__)

ResizeCallback = Callable[[int, int], None]

_DEFAULT_SIZE = (80, 24)


@runtime_checkable
class HostTerminal(Protocol):
    """The operator's terminal, as seen by AttachCoordinator."""

    def foreground(self) -> "AsyncIterator[None]":
        """Async context manager: suspend the app and take raw control of the device."""
        ...

    async def read(self, timeout: float) -> Optional[bytes]:
        """Next chunk of operator input; None on timeout, b"" at EOF."""
        ...

    async def write(self, data: bytes) -> None: ...

    def size(self) -> tuple[int, int]:
        """Current (cols, rows)."""
        ...

    def watch_resize(self, callback: ResizeCallback) -> Callable[[], None]:
        """Call `callback(cols, rows)` on geometry changes; returns an unsubscribe function."""
        ...


class TtyHostTerminal:
    """HostTerminal over a pair of raw file descriptors (normally stdin/stdout)."""

    def __init__(
        self,
        input_fd: int = 0,
        output_fd: int = 1,
        *,
        alt_screen: bool = True,
        handle_sigwinch: bool = True,
    ) -> None:
        self.input_fd = input_fd
        self.output_fd = output_fd
        self.alt_screen = alt_screen
        self.handle_sigwinch = handle_sigwinch
        self._queue: asyncio.Queue[bytes] = asyncio.Queue()
        self._reading = False
        self._eof = False
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    @asynccontextmanager
    async def foreground(self) -> AsyncIterator[None]:
        try:
            baseline = termios.tcgetattr(self.input_fd)
        except termios.error as e:
            raise ResourceUnavailableError(f"Host input is not a terminal: {e}") from e

        if self.alt_screen:
            self._write_now(ALT_SCREEN_LEAVE + CLEAR_SCREEN + CURSOR_SHOW)
        self._queue = asyncio.Queue()
        self._eof = False
        try:
            tty.setraw(self.input_fd)
            self._start_reading()
            self._active = True
            yield
        finally:
            self._active = False
            self._stop_reading()
            termios.tcsetattr(self.input_fd, termios.TCSAFLUSH, baseline)
            if self.alt_screen:
                self._write_now(ALT_SCREEN_ENTER)
            logger.debug("Host terminal restored (fd=%d)", self.input_fd)

    def _start_reading(self) -> None:
        asyncio.get_running_loop().add_reader(self.input_fd, self._on_readable)
        self._reading = True

    def _stop_reading(self) -> None:
        if self._reading:
            asyncio.get_running_loop().remove_reader(self.input_fd)
            self._reading = False

    def _on_readable(self) -> None:
        try:
            data = os.read(self.input_fd, ATTACH_READ_CHUNK)
        except BlockingIOError:
            return
        except OSError as e:
            logger.warning("Host terminal read failed: %s", e)
            data = b""
        if not data:
            self._stop_reading()
        self._queue.put_nowait(data)

    async def read(self, timeout: float) -> Optional[bytes]:
        if self._eof:
            return b""
        try:
            data = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        if not data:
            self._eof = True
        return data

    def _write_now(self, data: bytes, timeout: float = SUBPROCESS_TIMEOUT_QUICK) -> None:
        """Blocking write for the short mode-switch sequences, bounded by `timeout`.

        Raises:
            TimeoutError: The terminal accepted nothing for `timeout` seconds.
        """
        deadline = time.monotonic() + timeout
        view = memoryview(data)
        while view:
            try:
                written = os.write(self.output_fd, view)
            except BlockingIOError:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError(f"host terminal write stalled for {timeout}s") from None
                select.select([], [self.output_fd], [], min(remaining, 0.01))
                continue
            view = view[written:]

    async def write(self, data: bytes, timeout: float = SUBPROCESS_TIMEOUT_QUICK) -> None:
        """Write all of `data`, yielding while the terminal is not draining.

        Raises:
            TimeoutError: The terminal accepted nothing for `timeout` seconds.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        view = memoryview(data)
        while view:
            try:
                written = os.write(self.output_fd, view)
            except BlockingIOError:
                if loop.time() > deadline:
                    raise TimeoutError(f"host terminal write stalled for {timeout}s") from None
                await asyncio.sleep(0.01)
                continue
            view = view[written:]

    def size(self) -> tuple[int, int]:
        try:
            columns, lines = os.get_terminal_size(self.output_fd)
        except OSError:
            return _DEFAULT_SIZE
        return columns, lines

    def watch_resize(self, callback: ResizeCallback) -> Callable[[], None]:
        if not self.handle_sigwinch:
            return lambda: None
        loop = asyncio.get_running_loop()

        def on_winch() -> None:
            callback(*self.size())

        try:
            loop.add_signal_handler(signal.SIGWINCH, on_winch)
        except (NotImplementedError, RuntimeError, ValueError) as e:
            logger.debug("SIGWINCH forwarding unavailable: %s", e)
            return lambda: None
        return lambda: loop.remove_signal_handler(signal.SIGWINCH)


class TextualHostTerminal(TtyHostTerminal):
    """HostTerminal that takes the device back from a running Textual app."""

    def __init__(self, app: "App", input_fd: int = 0, output_fd: int = 1, *, handle_sigwinch: bool = True) -> None:
        # Textual leaves and re-enters its own alternate screen on suspend.
        super().__init__(input_fd, output_fd, alt_screen=False, handle_sigwinch=handle_sigwinch)
        self.app = app

    @asynccontextmanager
    async def foreground(self) -> AsyncIterator[None]:
        with ExitStack() as stack:
            try:
                stack.enter_context(self.app.suspend())
            except SuspendNotSupported as e:
                raise ResourceUnavailableError(f"Textual driver cannot suspend: {e}") from e
            async with super().foreground():
                yield
