"""Session lifecycle controller - the single writer of session state.

Commands against one session are serialized by a per-session lock; a command
arriving while another one holds the lock is rejected with ConflictError
rather than queued. Commands against different sessions run independently.

Resources are acquired container-then-multiplexer and released in the
reverse order. A failed release never blocks a session from reaching
Stopped: the handle is kept on the session and retried on its next teardown.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Literal, Optional, get_args

from ciab.config.schema import CiabConfig
from ciab.core.attach_coordinator import AttachCoordinator, DetachReason
from ciab.core.container_backend import ContainerBackend, ContainerSpec, DockerCliBackend
from ciab.core.errors import (
    ConflictError,
    InvalidRequestError,
    ResourceLeakError,
    ResourceUnavailableError,
    SessionNotFoundError,
    SessionRuntimeError,
)
from ciab.core.event_bus import LifecycleEventBus
from ciab.core.host_terminal import HostTerminal, TtyHostTerminal
from ciab.core.models import (
    ALLOWED_TRANSITIONS,
    LifecycleTransition,
    PreviewBuffer,
    Session,
    SessionState,
    SessionView,
)
from ciab.core.multiplexer_bridge import MultiplexerBridge
from ciab.core.preview_scheduler import PreviewScheduler
from ciab.core.resources import MultiplexerRef, ResourceHandle
from ciab.core.session_cleanup import cleanup_orphan_containers
from ciab.core.task_registry import TaskRegistry
from ciab.utils import short_id

logger = logging.getLogger(__name__)

ShutdownPolicy = Literal["persist", "stop"]


def _release_order(handle: ResourceHandle) -> int:
    return 0 if isinstance(handle, MultiplexerRef) else 1


class SessionLifecycleController:  # pylint: disable=too-many-instance-attributes
    """Owns the session table and every lifecycle transition."""

    def __init__(
        self,
        backend: ContainerBackend,
        bridge: MultiplexerBridge,
        cfg: CiabConfig,
        *,
        terminal: Optional[HostTerminal] = None,
        event_bus: Optional[LifecycleEventBus] = None,
        task_registry: Optional[TaskRegistry] = None,
    ) -> None:
        self.backend = backend
        self.bridge = bridge
        self.config = cfg
        self.event_bus = event_bus or LifecycleEventBus()
        self.task_registry = task_registry or TaskRegistry()
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.attach_coordinator = AttachCoordinator(
            bridge, terminal or TtyHostTerminal(), cfg.attach, self.task_registry
        )
        self.preview = PreviewScheduler(
            bridge,
            lambda: self._sessions.values(),
            cfg.preview,
            self.task_registry,
            on_failure=self.report_failure,
        )

    @classmethod
    def from_config(cls, cfg: CiabConfig, *, terminal: Optional[HostTerminal] = None) -> "SessionLifecycleController":
        """Wire the docker/podman CLI backend and tmux bridge from configuration."""
        backend = DockerCliBackend(cfg.container)
        bridge = MultiplexerBridge(backend, cfg.multiplexer, exec_timeout=cfg.container.exec_timeout)
        return cls(backend, bridge, cfg, terminal=terminal)

    # ------------------------------------------------------------------
    # helpers

    def _lookup(self, key: str) -> Session:
        session = self._sessions.get(key)
        if session is not None:
            return session
        for candidate in self._sessions.values():
            if candidate.display_name == key:
                return candidate
        raise SessionNotFoundError(key)

    @asynccontextmanager
    async def _serialized(self, key: str, command: str) -> AsyncIterator[Session]:
        session = self._lookup(key)
        lock = self._locks[session.session_id]
        if lock.locked():
            raise ConflictError(
                f"Session {session.display_name} is busy, {command} rejected", session_id=session.session_id
            )
        async with lock:
            # The session may have been deleted while we were acquiring.
            if session.session_id not in self._sessions:
                raise SessionNotFoundError(session.session_id)
            yield session

    async def _transition(self, session: Session, new_state: SessionState, reason: str) -> None:
        old_state = session.lifecycle_state
        if new_state not in ALLOWED_TRANSITIONS[old_state]:
            raise InvalidRequestError(
                f"Illegal transition {old_state.value} -> {new_state.value}", session_id=session.session_id
            )
        session.lifecycle_state = new_state
        session.touch()
        logger.info(
            "Session %s: %s -> %s (%s)", short_id(session.session_id), old_state.value, new_state.value, reason
        )
        await self.event_bus.publish(LifecycleTransition(session.session_id, old_state, new_state, reason))

    async def _release_all(self, session: Session) -> None:
        """Release every handle the session holds, multiplexers before containers.

        Handles whose release fails end up in `session.leaked_handles`.
        """
        handles: list[ResourceHandle] = list(session.leaked_handles)
        if session.multiplexer_ref is not None:
            handles.append(session.multiplexer_ref)
        if session.container_ref is not None:
            handles.append(session.container_ref)
        handles.sort(key=_release_order)

        leaked: list[ResourceHandle] = []
        for handle in handles:
            try:
                await handle.release()
            except ResourceLeakError as e:
                logger.error("Session %s: %s (will retry on next teardown)", short_id(session.session_id), e)
                leaked.append(handle)
        session.leaked_handles = leaked
        session.multiplexer_ref = None
        session.container_ref = None

    # ------------------------------------------------------------------
    # commands

    async def create(self, display_name: str, workspace_path: str, program: Optional[str] = None) -> str:
        """Register a new session in Created. Touches no external resources.

        Raises:
            InvalidRequestError: Empty name or path, or duplicate display name
        """
        display_name = display_name.strip()
        if not display_name:
            raise InvalidRequestError("Session name must not be empty")
        if not workspace_path or not workspace_path.strip():
            raise InvalidRequestError("Workspace path must not be empty")
        if any(s.display_name == display_name for s in self._sessions.values()):
            raise InvalidRequestError(f"Session name already in use: {display_name}")

        session_id = str(uuid.uuid4())
        session = Session(
            session_id=session_id,
            display_name=display_name,
            workspace_path=workspace_path,
            program=program or self.config.runtime.program,
            preview_buffer=PreviewBuffer(self.config.preview.max_lines),
        )
        self._sessions[session_id] = session
        self._locks[session_id] = asyncio.Lock()
        logger.info("Created session %s (%s, workspace=%s)", short_id(session_id), display_name, workspace_path)
        return session_id

    async def start(self, session_id: str) -> SessionView:
        """Materialize the container and the tmux session, ending in Running or Failed.

        Raises:
            InvalidRequestError: Session not in Created or Stopped
            ConflictError: Another command is in progress for this session
            ResourceUnavailableError: Container or tmux session could not be created,
                or resources leaked by the previous run could still not be released
            MissingDependencyError: tmux (or the engine CLI) is missing
            OperationTimeoutError: An engine call timed out
        """
        async with self._serialized(session_id, "start") as session:
            if session.lifecycle_state not in (SessionState.CREATED, SessionState.STOPPED):
                hint = ", stop it first" if session.lifecycle_state is SessionState.FAILED else ""
                raise InvalidRequestError(
                    f"Cannot start session in state {session.lifecycle_state.value}{hint}",
                    session_id=session.session_id,
                )
            if session.leaked_handles:
                await self._release_all(session)
            if session.leaked_handles:
                # A new container would reuse the leaked one's name.
                raise ResourceUnavailableError(
                    "Resources from the previous run are still held: "
                    + ", ".join(h.name for h in session.leaked_handles),
                    session_id=session.session_id,
                )

            await self._transition(session, SessionState.STARTING, "start requested")
            try:
                spec = ContainerSpec.for_session(session.session_id, self.config.container)
                session.container_ref = await self.backend.create_and_start(session.workspace_path, spec)
                session.multiplexer_ref = await self.bridge.start(
                    session.container_ref,
                    self.bridge.session_name_for(session.display_name),
                    session.program,
                    self.config.container.working_dir,
                )
            except SessionRuntimeError as e:
                await self._release_all(session)
                session.failure_reason = f"{e.code}: {e.message}"
                await self._transition(session, SessionState.FAILED, session.failure_reason)
                if e.session_id is None:
                    e.session_id = session.session_id
                raise
            except asyncio.CancelledError:
                await self._release_all(session)
                session.failure_reason = "start cancelled"
                await self._transition(session, SessionState.FAILED, session.failure_reason)
                raise
            except Exception as e:
                logger.exception("Unexpected error starting session %s", short_id(session.session_id))
                await self._release_all(session)
                error = ResourceUnavailableError(
                    f"Failed to start session: {type(e).__name__}: {e}", session_id=session.session_id
                )
                session.failure_reason = f"{error.code}: {error.message}"
                await self._transition(session, SessionState.FAILED, session.failure_reason)
                raise error from e

            session.failure_reason = None
            await self._transition(session, SessionState.RUNNING, "container and tmux session up")
            return session.snapshot()

    async def _stop_locked(self, session: Session, reason: str) -> None:
        await self._transition(session, SessionState.STOPPING, reason)
        # Detach must finish before anything is torn down under the attached stream.
        await self.attach_coordinator.force_detach(session.session_id)
        try:
            await self._release_all(session)
        except asyncio.CancelledError:
            session.failure_reason = "teardown cancelled"
            await self._transition(session, SessionState.FAILED, session.failure_reason)
            raise
        await self._transition(session, SessionState.STOPPED, reason)

    async def stop(self, session_id: str) -> SessionView:
        """Tear the session's resources down, ending in Stopped.

        Idempotent: stopping a Stopped or Created session is a no-op apart
        from retrying leaked handles.

        Raises:
            ConflictError: Another command is in progress for this session
        """
        async with self._serialized(session_id, "stop") as session:
            state = session.lifecycle_state
            if state in (SessionState.RUNNING, SessionState.FAILED):
                await self._stop_locked(session, "stop requested")
            elif session.leaked_handles:
                await self._release_all(session)
            return session.snapshot()

    async def delete(self, session_id: str) -> None:
        """Remove the session record, stopping it first if it is live.

        Raises:
            ConflictError: Another command is in progress for this session
        """
        async with self._serialized(session_id, "delete") as session:
            if session.lifecycle_state in (SessionState.RUNNING, SessionState.FAILED):
                await self._stop_locked(session, "delete requested")
            if session.leaked_handles:
                await self._release_all(session)
            if session.leaked_handles:
                logger.error(
                    "Deleting session %s with leaked resources: %s",
                    short_id(session.session_id),
                    ", ".join(h.name for h in session.leaked_handles),
                )
            await self._transition(session, SessionState.DELETED, "delete requested")
            del self._sessions[session.session_id]
            self.preview.forget(session.session_id)
        self._locks.pop(session.session_id, None)

    def list(self) -> list[SessionView]:
        return [s.snapshot() for s in sorted(self._sessions.values(), key=lambda s: s.created_at)]

    def get(self, key: str) -> SessionView:
        """Look a session up by id or display name.

        Raises:
            SessionNotFoundError: No such session
        """
        return self._lookup(key).snapshot()

    async def attach(self, session_id: str) -> DetachReason:
        """Give the session the host terminal until it detaches. Blocks for the whole attachment.

        Raises:
            InvalidRequestError: Session is not Running
            ConflictError: Another session is attached, or a command is in progress
            ResourceUnavailableError: Host terminal or stream unavailable
        """
        async with self._serialized(session_id, "attach") as session:
            if session.lifecycle_state is not SessionState.RUNNING:
                raise InvalidRequestError(
                    f"Cannot attach to session in state {session.lifecycle_state.value}", session_id=session.session_id
                )
        return await self.attach_coordinator.attach(session)

    async def detach(self, session_id: str) -> bool:
        """Force the attached session back to the background."""
        return await self.attach_coordinator.force_detach(self._lookup(session_id).session_id)

    async def snapshot(self, session_id: str, *, full_history: bool = False) -> bytes:
        """Capture the session's screen on demand (not written to the preview buffer).

        Raises:
            InvalidRequestError: The session has no tmux session
        """
        session = self._lookup(session_id)
        ref = session.multiplexer_ref
        if ref is None:
            raise InvalidRequestError(
                f"Session in state {session.lifecycle_state.value} has no tmux session", session_id=session.session_id
            )
        return await self.bridge.snapshot(ref, full_history=full_history)

    async def _fail_locked(self, session: Session, reason: str) -> None:
        await self.attach_coordinator.force_detach(session.session_id)
        session.failure_reason = reason
        await self._transition(session, SessionState.FAILED, reason)

    async def probe(self, session_id: str) -> SessionView:
        """Health check: a Running session whose container or tmux session is gone becomes Failed.

        Raises:
            ConflictError: Another command is in progress for this session
        """
        async with self._serialized(session_id, "probe") as session:
            container_ref, mux_ref = session.container_ref, session.multiplexer_ref
            if session.lifecycle_state is not SessionState.RUNNING or container_ref is None or mux_ref is None:
                return session.snapshot()
            try:
                if not await self.backend.is_running(container_ref):
                    await self._fail_locked(session, "container is no longer running")
                elif not await self.bridge.session_exists(mux_ref):
                    await self._fail_locked(session, "tmux session exited")
            except SessionRuntimeError as e:
                logger.warning("Probe of session %s inconclusive: %s", short_id(session.session_id), e)
            return session.snapshot()

    async def report_failure(self, session_id: str, reason: str) -> None:
        """Mark a Running session Failed on behalf of a background task.

        Waits for the session lock instead of rejecting, since the caller is
        not a user command.
        """
        lock = self._locks.get(session_id)
        if lock is None:
            return
        async with lock:
            session = self._sessions.get(session_id)
            if session is None or session.lifecycle_state is not SessionState.RUNNING:
                return
            await self._fail_locked(session, reason)

    async def cleanup_orphans(self) -> int:
        """Remove stale managed containers (exited, or workspace gone) that no session here owns.

        Raises:
            ResourceUnavailableError: The engine could not list containers
        """
        owned = {s.container_ref.container_name for s in self._sessions.values() if s.container_ref is not None}
        for session in self._sessions.values():
            owned.update(h.name for h in session.leaked_handles)
        return await cleanup_orphan_containers(self.backend, owned)

    # ------------------------------------------------------------------
    # process lifetime

    async def startup(self) -> None:
        """Start background work; removes stale orphans first when `cleanup_orphans_on_startup` is set."""
        if self.config.runtime.cleanup_orphans_on_startup:
            try:
                removed = await self.cleanup_orphans()
            except SessionRuntimeError as e:
                logger.warning("Orphan cleanup skipped: %s", e)
            else:
                if removed:
                    logger.info("Removed %d orphan containers", removed)
        self.preview.start()

    async def shutdown(self, policy: Optional[ShutdownPolicy] = None) -> None:
        """Stop background work and apply the shutdown policy to every live session.

        `persist` leaves containers and tmux sessions running for a later
        `ciab` run; `stop` tears them down.

        Raises:
            InvalidRequestError: Unknown policy (checked before anything is stopped)
        """
        policy = policy or self.config.runtime.shutdown_policy
        if policy not in get_args(ShutdownPolicy):
            raise InvalidRequestError(f"Unknown shutdown policy: {policy}")
        await self.preview.stop()

        attached = self.attach_coordinator.attached_session_id
        if attached is not None:
            await self.attach_coordinator.force_detach(attached)

        live = [
            s for s in self._sessions.values() if s.lifecycle_state in (SessionState.RUNNING, SessionState.FAILED)
        ]
        if policy == "stop":
            results = await asyncio.gather(*(self._shutdown_stop(s) for s in live), return_exceptions=True)
            for session, result in zip(live, results):
                if isinstance(result, Exception):
                    logger.error("Failed to stop session %s on shutdown: %s", short_id(session.session_id), result)
        elif live:
            logger.info(
                "Leaving %d sessions running: %s",
                len(live),
                ", ".join(s.container_ref.container_name for s in live if s.container_ref is not None),
            )

        await self.task_registry.shutdown()

    async def _shutdown_stop(self, session: Session) -> None:
        async with self._locks[session.session_id]:
            if session.lifecycle_state in (SessionState.RUNNING, SessionState.FAILED):
                await self._stop_locked(session, "shutdown")
