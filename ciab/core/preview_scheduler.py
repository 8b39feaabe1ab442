"""Preview scheduler - keeps every detached session's preview buffer fresh.

A single timer loop fans out one snapshot task per eligible session per tick.
A session whose previous snapshot is still in flight is skipped, so the
number of concurrent `tmux capture-pane` calls never exceeds the number of
sessions.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional

from ciab.config.schema import PreviewSettings
from ciab.core.models import Session, SessionState
from ciab.core.multiplexer_bridge import MultiplexerBridge
from ciab.core.task_registry import TaskRegistry
from ciab.utils import short_id

logger = logging.getLogger(__name__)

SessionSource = Callable[[], Iterable[Session]]
FailureCallback = Callable[[str, str], Awaitable[object]]


class PreviewScheduler:
    """Periodic snapshot poller writing into Session.preview_buffer."""

    def __init__(
        self,
        bridge: MultiplexerBridge,
        sessions: SessionSource,
        settings: PreviewSettings,
        task_registry: TaskRegistry,
        on_failure: Optional[FailureCallback] = None,
    ) -> None:
        self.bridge = bridge
        self.sessions = sessions
        self.settings = settings
        self.task_registry = task_registry
        self.on_failure = on_failure
        self.interval = settings.interval_ms / 1000
        self._in_flight: set[str] = set()
        self._reported: set[str] = set()
        self._loop_task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def in_flight(self, session_id: str) -> bool:
        return session_id in self._in_flight

    def start(self) -> None:
        if self.running:
            return
        self._loop_task = self.task_registry.spawn(self.run(), name="preview-scheduler")
        logger.info("Preview scheduler started (interval=%dms)", self.settings.interval_ms)

    async def stop(self) -> None:
        task, self._loop_task = self._loop_task, None
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info("Preview scheduler stopped")

    async def run(self) -> None:
        while True:
            self.tick()
            await asyncio.sleep(self.interval)

    def _eligible(self, session: Session) -> bool:
        return (
            session.lifecycle_state is SessionState.RUNNING
            and session.multiplexer_ref is not None
            and not session.attached
            and session.session_id not in self._in_flight
        )

    def tick(self) -> list[asyncio.Task[None]]:
        """Spawn one snapshot task per eligible session; returns the spawned tasks."""
        spawned = []
        for session in list(self.sessions()):
            if not self._eligible(session):
                continue
            self._in_flight.add(session.session_id)
            try:
                task = self.task_registry.spawn(self._refresh(session), name=f"preview-{short_id(session.session_id)}")
            except RuntimeError:
                self._in_flight.discard(session.session_id)
                raise
            spawned.append(task)
        return spawned

    async def _refresh(self, session: Session) -> None:
        try:
            ref = session.multiplexer_ref
            if ref is None:
                return
            data = await self.bridge.snapshot(ref)
            # Attach may have started while the capture was running.
            if session.attached or session.multiplexer_ref is not ref:
                return
            session.preview_buffer.update(data)

            if ref.snapshot_failures == 0:
                self._reported.discard(session.session_id)
            elif ref.snapshot_failures >= self.settings.max_consecutive_failures:
                await self._report_failure(session, ref.snapshot_failures)
        finally:
            self._in_flight.discard(session.session_id)

    async def _report_failure(self, session: Session, failures: int) -> None:
        if session.session_id in self._reported or self.on_failure is None:
            return
        self._reported.add(session.session_id)
        reason = f"snapshot failed {failures} times in a row"
        logger.warning("Session %s: %s", short_id(session.session_id), reason)
        await self.on_failure(session.session_id, reason)

    def forget(self, session_id: str) -> None:
        self._reported.discard(session_id)
