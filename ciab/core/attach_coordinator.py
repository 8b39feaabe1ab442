"""Attach coordinator - hands one session's tmux stream the host terminal.

Only one session may be attached at a time. The gate is an asyncio.Lock held
from before the host terminal is suspended until after it is restored and
`attached` is cleared again, so every exit path (detach key, remote exit,
I/O error, forced detach, cancellation) releases it.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Optional

from ciab.config.schema import AttachSettings
from ciab.core.errors import ConflictError, InvalidRequestError
from ciab.core.host_terminal import HostTerminal
from ciab.core.models import Session, SessionState
from ciab.core.multiplexer_bridge import MultiplexerBridge
from ciab.core.pty_stream import DuplexByteStream
from ciab.core.resources import MultiplexerRef
from ciab.core.task_registry import TaskRegistry
from ciab.utils import short_id

logger = logging.getLogger(__name__)


class DetachReason(str, Enum):
    DETACH_KEY = "detach_key"
    REMOTE_EXIT = "remote_exit"
    HOST_EOF = "host_eof"
    IO_ERROR = "io_error"
    FORCED = "forced"


class AttachCoordinator:
    """Owns the "at most one attached session" gate and the forwarding loops."""

    def __init__(
        self,
        bridge: MultiplexerBridge,
        terminal: HostTerminal,
        settings: AttachSettings,
        task_registry: Optional[TaskRegistry] = None,
    ) -> None:
        self.bridge = bridge
        self.terminal = terminal
        self.settings = settings
        self.detach_byte = settings.detach_byte
        self.task_registry = task_registry or TaskRegistry()
        self._gate = asyncio.Lock()
        self._current: Optional[Session] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._finished: Optional[asyncio.Event] = None
        self._forced = False

    @property
    def busy(self) -> bool:
        return self._gate.locked()

    @property
    def attached_session_id(self) -> Optional[str]:
        current = self._current
        return current.session_id if current is not None and current.attached else None

    async def attach(self, session: Session) -> DetachReason:
        """Make `session` the host's foreground terminal until it detaches.

        Blocks for the whole interactive period.

        Raises:
            ConflictError: Another session is attached ("busy")
            InvalidRequestError: The session is not Running
            StreamAlreadyOpenError: A stream to the tmux session is already open
            ResourceUnavailableError: The host terminal or the stream could not be acquired
        """
        if self._gate.locked():
            raise ConflictError(
                f"busy: session {short_id(self.attached_session_id or '?')} is attached", session_id=session.session_id
            )

        async with self._gate:
            ref = session.multiplexer_ref
            if session.lifecycle_state is not SessionState.RUNNING or ref is None:
                raise InvalidRequestError(
                    f"Cannot attach to session in state {session.lifecycle_state.value}", session_id=session.session_id
                )

            self._current = session
            self._stop_event = asyncio.Event()
            self._finished = asyncio.Event()
            self._forced = False
            try:
                async with self.terminal.foreground():
                    cols, rows = self.terminal.size()
                    stream = await self.bridge.open_stream(ref, cols, rows)
                    try:
                        session.attached = True
                        session.touch()
                        logger.info("Attached to session %s (%dx%d)", short_id(session.session_id), cols, rows)
                        await self.bridge.resize(ref, cols, rows)
                        unwatch = self.terminal.watch_resize(lambda c, r: self._on_resize(ref, stream, c, r))
                        try:
                            reason = await self._pump(stream, self._stop_event)
                        finally:
                            unwatch()
                    finally:
                        await stream.close()
            finally:
                session.attached = False
                self._current = None
                self._stop_event = None
                self._finished.set()
            if self._forced:
                reason = DetachReason.FORCED

        logger.info("Detached from session %s (%s)", short_id(session.session_id), reason.value)
        return reason

    async def force_detach(self, session_id: str) -> bool:
        """End the attachment of `session_id`, waiting until the host terminal is restored.

        Returns:
            True if the session was attached
        """
        session, stop_event, finished = self._current, self._stop_event, self._finished
        if session is None or session.session_id != session_id or stop_event is None or finished is None:
            return False
        logger.info("Forcing detach of session %s", short_id(session_id))
        self._forced = True
        stop_event.set()
        await finished.wait()
        return True

    def _on_resize(self, ref: MultiplexerRef, stream: DuplexByteStream, cols: int, rows: int) -> None:
        stream.resize(cols, rows)
        self.task_registry.spawn(self.bridge.resize(ref, cols, rows), name=f"resize-{ref.session_name}")

    async def _pump(self, stream: DuplexByteStream, stop: asyncio.Event) -> DetachReason:
        input_task = asyncio.create_task(self._forward_input(stream, stop), name="attach-input")
        output_task = asyncio.create_task(self._forward_output(stream, stop), name="attach-output")
        tasks = (input_task, output_task)
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        stop.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        first = next(iter(done))
        result = results[tasks.index(first)]
        if isinstance(result, BaseException):
            logger.error("Attach forwarding failed: %s", result, exc_info=result)
            return DetachReason.IO_ERROR
        return result

    async def _forward_input(self, stream: DuplexByteStream, stop: asyncio.Event) -> DetachReason:
        loop = asyncio.get_running_loop()
        grace_until = loop.time() + self.settings.input_grace_ms / 1000
        while not stop.is_set():
            data = await self.terminal.read(self.settings.read_timeout)
            if data is None:
                continue
            if not data:
                return DetachReason.HOST_EOF
            if loop.time() < grace_until:
                logger.debug("Dropped %d bytes of input inside the grace window", len(data))
                continue

            index = data.find(self.detach_byte)
            if index >= 0:
                if index:
                    await self._write_remote(stream, data[:index])
                return DetachReason.DETACH_KEY
            if not await self._write_remote(stream, data):
                return DetachReason.IO_ERROR
        return DetachReason.FORCED

    async def _write_remote(self, stream: DuplexByteStream, data: bytes) -> bool:
        try:
            await stream.write(data)
        except (OSError, TimeoutError) as e:
            logger.warning("Write to attached session failed: %s", e)
            return False
        return True

    async def _forward_output(self, stream: DuplexByteStream, stop: asyncio.Event) -> DetachReason:
        while not stop.is_set():
            data = await stream.read(self.settings.read_timeout)
            if data is None:
                continue
            if not data:
                return DetachReason.REMOTE_EXIT
            try:
                await self.terminal.write(data)
            except OSError as e:
                logger.warning("Write to host terminal failed: %s", e)
                return DetachReason.IO_ERROR
        return DetachReason.FORCED
