"""Multiplexer bridge - manages tmux sessions living inside session containers.

Every tmux command runs through ContainerBackend.exec, so the bridge works the
same for any engine. Passive observation (snapshot) and active use
(open_stream) are both mediated here, and the bridge enforces that at most
one interactive stream exists per tmux session.
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from ciab.config.schema import MultiplexerSettings
from ciab.constants import EXEC_NOT_FOUND_EXIT_CODES, SUBPROCESS_TIMEOUT_QUICK, TMUX_SESSION_PREFIX
from ciab.core.container_backend import ContainerBackend
from ciab.core.errors import (
    ConflictError,
    ContainerGoneError,
    MissingDependencyError,
    OperationTimeoutError,
    ResourceUnavailableError,
    StreamAlreadyOpenError,
)
from ciab.core.process_utils import ProcessOutput
from ciab.core.pty_stream import DuplexByteStream, PtyProcessStream
from ciab.core.resources import ContainerRef, MultiplexerRef
from ciab.runtime.binaries import resolve_tmux_binary

logger = logging.getLogger(__name__)

_SESSION_GONE_MARKERS = ("can't find session", "no server running", "session not found", "no such session")
_NAME_UNSAFE = re.compile(r"[\s.:]")


def sanitize_session_name(display_name: str, prefix: str = TMUX_SESSION_PREFIX) -> str:
    """Build a tmux-safe session name.

    tmux uses ':' and '.' as target separators, so they are replaced along
    with whitespace.
    """
    return f"{prefix}{_NAME_UNSAFE.sub('_', display_name.strip())}"


def _is_session_gone(result: ProcessOutput) -> bool:
    lowered = result.stderr_text.lower()
    return any(marker in lowered for marker in _SESSION_GONE_MARKERS)


class _BridgeStream:
    """DuplexByteStream returned by open_stream.

    Delegates I/O to the client stream and gives the per-session stream slot
    back to the bridge on close.
    """

    def __init__(self, bridge: "MultiplexerBridge", ref: MultiplexerRef, inner: DuplexByteStream) -> None:
        self._bridge = bridge
        self._ref = ref
        self._inner = inner
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed or self._inner.closed

    async def read(self, timeout: float) -> Optional[bytes]:
        return await self._inner.read(timeout)

    async def write(self, data: bytes) -> None:
        await self._inner.write(data)

    def resize(self, cols: int, rows: int) -> None:
        self._inner.resize(cols, rows)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._bridge.detach_clients(self._ref)
            await self._inner.close()
        finally:
            self._bridge._release_stream_slot(self._ref)


class MultiplexerBridge:
    """tmux session management inside containers."""

    def __init__(self, backend: ContainerBackend, settings: MultiplexerSettings, exec_timeout: float = 30.0) -> None:
        self.backend = backend
        self.settings = settings
        self.exec_timeout = exec_timeout
        self.tmux = resolve_tmux_binary()
        self._open_streams: set[int] = set()

    def session_name_for(self, display_name: str) -> str:
        return sanitize_session_name(display_name, self.settings.session_prefix)

    async def _tmux(self, container_ref: ContainerRef, *args: str, timeout: Optional[float] = None) -> ProcessOutput:
        return await self.backend.exec(
            container_ref, [self.tmux, *args], timeout=timeout if timeout is not None else self.exec_timeout
        )

    async def check_installed(self, container_ref: ContainerRef) -> None:
        """Verify tmux exists inside the container.

        Raises:
            MissingDependencyError: If tmux is not installed in the image
        """
        result = await self.backend.exec(
            container_ref, ["sh", "-c", f"command -v {self.tmux}"], timeout=SUBPROCESS_TIMEOUT_QUICK
        )
        if not result.ok:
            raise MissingDependencyError(self.tmux, f"container {container_ref.container_name}")

    async def start(self, container_ref: ContainerRef, session_name: str, program: str, workdir: str) -> MultiplexerRef:
        """Create a detached tmux session running `program` in `workdir`.

        Raises:
            MissingDependencyError: tmux is not installed in the container
            ConflictError: A session with that name already exists
            ResourceUnavailableError: The container is unreachable or tmux failed
        """
        await self.check_installed(container_ref)

        existing = await self._tmux(container_ref, "has-session", "-t", f"={session_name}")
        if existing.ok:
            raise ConflictError(f"tmux session already exists: {session_name}")

        result = await self._tmux(
            container_ref,
            "new-session",
            "-d",
            "-s",
            session_name,
            "-c",
            workdir,
            "-x",
            str(self.settings.cols),
            "-y",
            str(self.settings.rows),
            program,
        )
        if result.returncode in EXEC_NOT_FOUND_EXIT_CODES:
            raise MissingDependencyError(self.tmux, f"container {container_ref.container_name}")
        if not result.ok:
            raise ResourceUnavailableError(
                f"Failed to create tmux session {session_name}: {result.stderr_text or result.returncode}"
            )

        ref = MultiplexerRef(session_name, container=container_ref)
        ref.bind_release(lambda: self.kill(ref))
        await self._configure(ref)
        logger.info("Started tmux session %s in %s (%s)", session_name, container_ref.container_name, program)
        return ref

    async def _configure(self, ref: MultiplexerRef) -> None:
        options = [("history-limit", str(self.settings.history_limit)), ("mouse", "on" if self.settings.mouse else "off")]
        for option, value in options:
            try:
                result = await self._tmux(ref.container, "set-option", "-t", ref.session_name, option, value)
            except (OperationTimeoutError, ResourceUnavailableError) as e:
                logger.warning("Failed to set %s on %s: %s", option, ref.session_name, e)
                continue
            if not result.ok:
                logger.warning("Failed to set %s on %s: %s", option, ref.session_name, result.stderr_text)

    async def capture(self, ref: MultiplexerRef, *, full_history: bool = False) -> bytes:
        """Capture the pane, raising on any failure.

        Raises:
            OperationTimeoutError: capture exceeded the snapshot timeout
            ResourceUnavailableError: the container or tmux session is gone
        """
        args = ["capture-pane", "-p", "-e", "-J", "-t", ref.session_name]
        if full_history:
            args.extend(["-S", "-", "-E", "-"])
        elif self.settings.scrollback_lines:
            args.extend(["-S", f"-{self.settings.scrollback_lines}"])

        result = await self._tmux(ref.container, *args, timeout=self.settings.snapshot_timeout)
        if not result.ok:
            raise ResourceUnavailableError(f"capture-pane failed for {ref.session_name}: {result.stderr_text}")
        return result.stdout

    async def snapshot(self, ref: MultiplexerRef, *, full_history: bool = False) -> bytes:
        """Current screen (with ANSI styling) of the tmux session.

        Never raises for a session that just exited or a capture that timed
        out: the last good snapshot is returned instead and the failure is
        counted on the ref.
        """
        try:
            data = await self.capture(ref, full_history=full_history)
        except (OperationTimeoutError, ResourceUnavailableError) as e:
            ref.snapshot_failures += 1
            logger.debug("Snapshot of %s failed (%d in a row): %s", ref.session_name, ref.snapshot_failures, e)
            return ref.last_snapshot

        ref.snapshot_failures = 0
        if not full_history:
            ref.last_snapshot = data
        return data

    def is_stream_open(self, ref: MultiplexerRef) -> bool:
        return id(ref) in self._open_streams

    def _release_stream_slot(self, ref: MultiplexerRef) -> None:
        self._open_streams.discard(id(ref))

    async def open_stream(self, ref: MultiplexerRef, cols: Optional[int] = None, rows: Optional[int] = None) -> DuplexByteStream:
        """Attach a live bidirectional channel to the tmux session.

        Raises:
            StreamAlreadyOpenError: A stream for this session is already open
            MissingDependencyError: The container engine CLI is missing on the host
            ResourceUnavailableError: The pty or client process could not be created
        """
        if ref.released:
            raise ResourceUnavailableError(f"tmux session {ref.session_name} has been released")
        key = id(ref)
        if key in self._open_streams:
            raise StreamAlreadyOpenError(f"An interactive stream is already open for {ref.session_name}")
        self._open_streams.add(key)
        try:
            inner = await self._connect(ref, cols or self.settings.cols, rows or self.settings.rows)
        except BaseException:
            self._open_streams.discard(key)
            raise

        logger.info("Opened interactive stream to %s", ref.session_name)
        return _BridgeStream(self, ref, inner)

    async def _connect(self, ref: MultiplexerRef, cols: int, rows: int) -> DuplexByteStream:
        """Spawn a tmux client for `ref` on a fresh pty."""
        argv = self.backend.interactive_argv(ref.container, [self.tmux, "attach-session", "-t", ref.session_name])
        try:
            return await PtyProcessStream.spawn(argv, name=ref.session_name, cols=cols, rows=rows)
        except FileNotFoundError as e:
            raise MissingDependencyError(argv[0], "host PATH") from e
        except OSError as e:
            raise ResourceUnavailableError(f"Failed to open stream to {ref.session_name}: {e}") from e

    async def detach_clients(self, ref: MultiplexerRef) -> None:
        """Detach every client from the tmux session (best-effort)."""
        try:
            await self._tmux(ref.container, "detach-client", "-s", ref.session_name, timeout=SUBPROCESS_TIMEOUT_QUICK)
        except (OperationTimeoutError, ResourceUnavailableError) as e:
            logger.debug("detach-client on %s failed: %s", ref.session_name, e)

    async def resize(self, ref: MultiplexerRef, cols: int, rows: int) -> None:
        """Propagate a geometry change into the tmux session (best-effort)."""
        try:
            result = await self._tmux(
                ref.container, "resize-window", "-t", ref.session_name, "-x", str(cols), "-y", str(rows)
            )
        except (OperationTimeoutError, ResourceUnavailableError) as e:
            logger.warning("Failed to resize %s to %dx%d: %s", ref.session_name, cols, rows, e)
            return
        if not result.ok:
            logger.warning("Failed to resize %s to %dx%d: %s", ref.session_name, cols, rows, result.stderr_text)

    async def session_exists(self, ref: MultiplexerRef) -> bool:
        try:
            result = await self._tmux(ref.container, "has-session", "-t", f"={ref.session_name}")
        except ContainerGoneError:
            return False
        return result.ok

    async def kill(self, ref: MultiplexerRef) -> None:
        """Terminate the tmux session. Idempotent: an absent session or container is success.

        Raises:
            ResourceUnavailableError: The engine could not be reached
            OperationTimeoutError: kill-session did not finish in time
        """
        try:
            result = await self._tmux(ref.container, "kill-session", "-t", f"={ref.session_name}")
        except ContainerGoneError:
            logger.debug("Container for %s already gone, nothing to kill", ref.session_name)
            return
        if result.ok or _is_session_gone(result):
            logger.info("Killed tmux session %s", ref.session_name)
            return
        raise ResourceUnavailableError(f"Failed to kill tmux session {ref.session_name}: {result.stderr_text}")
