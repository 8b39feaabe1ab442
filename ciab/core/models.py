"""Data models for ciab sessions."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from ciab.core.resources import ContainerRef, MultiplexerRef, ResourceHandle
from ciab.utils import strip_ansi_codes


class SessionState(str, Enum):
    """Lifecycle states of a session.

    Attached/Detached are not states: an attached session is Running with
    `attached=True`.
    """

    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"
    DELETED = "deleted"

    @property
    def is_live(self) -> bool:
        return self in LIVE_STATES


LIVE_STATES = frozenset({SessionState.STARTING, SessionState.RUNNING})

# Every legal edge of the state machine. Anything else is a bug in the controller.
ALLOWED_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.CREATED: frozenset({SessionState.STARTING, SessionState.DELETED}),
    SessionState.STARTING: frozenset({SessionState.RUNNING, SessionState.FAILED}),
    SessionState.RUNNING: frozenset({SessionState.STOPPING, SessionState.FAILED}),
    SessionState.STOPPING: frozenset({SessionState.STOPPED, SessionState.FAILED}),
    SessionState.STOPPED: frozenset({SessionState.STARTING, SessionState.DELETED}),
    SessionState.FAILED: frozenset({SessionState.STOPPING, SessionState.DELETED}),
    SessionState.DELETED: frozenset(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PreviewBuffer:
    """Bounded text buffer holding the latest screen snapshot plus limited scrollback.

    Each update replaces the whole content in one assignment, so readers see
    either the previous frame or the new one, never a mix.
    """

    def __init__(self, max_lines: int = 2000) -> None:
        self.max_lines = max_lines
        self._lines: tuple[str, ...] = ()
        self._raw: bytes = b""
        self.updated_at: Optional[datetime] = None

    def update(self, snapshot: bytes) -> bool:
        """Replace the buffer with a new snapshot.

        Returns:
            True if the content changed
        """
        if snapshot == self._raw:
            return False
        text = snapshot.decode("utf-8", errors="replace")
        kept = deque(text.splitlines(), maxlen=self.max_lines)
        self._raw, self._lines = snapshot, tuple(kept)
        self.updated_at = _utcnow()
        return True

    @property
    def raw(self) -> bytes:
        return self._raw

    @property
    def lines(self) -> tuple[str, ...]:
        return self._lines

    @property
    def text(self) -> str:
        """Buffer content with ANSI styling preserved."""
        return "\n".join(self._lines)

    @property
    def plain_text(self) -> str:
        return strip_ansi_codes(self.text)

    def tail(self, count: int) -> tuple[str, ...]:
        """Last `count` lines, ignoring trailing blank lines."""
        lines = list(self._lines)
        while lines and not lines[-1].strip():
            lines.pop()
        return tuple(lines[-count:]) if count > 0 else ()

    def __len__(self) -> int:
        return len(self._lines)


@dataclass
class Session:  # pylint: disable=too-many-instance-attributes  # Data model for one session
    """One isolated coding workspace: a container plus a tmux session inside it.

    `lifecycle_state`, `container_ref` and `multiplexer_ref` are written only by
    SessionLifecycleController; `preview_buffer` only by PreviewScheduler;
    `attached` only by AttachCoordinator.
    """

    session_id: str
    display_name: str
    workspace_path: str
    program: str
    lifecycle_state: SessionState = SessionState.CREATED
    container_ref: Optional[ContainerRef] = None
    multiplexer_ref: Optional[MultiplexerRef] = None
    preview_buffer: PreviewBuffer = field(default_factory=PreviewBuffer)
    attached: bool = False
    failure_reason: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    last_accessed: datetime = field(default_factory=_utcnow)
    leaked_handles: list[ResourceHandle] = field(default_factory=list, repr=False)

    @property
    def is_live(self) -> bool:
        return self.lifecycle_state.is_live

    def touch(self) -> None:
        self.last_accessed = _utcnow()

    def snapshot(self) -> "SessionView":
        """Immutable view for the presentation layer."""
        return SessionView(
            session_id=self.session_id,
            display_name=self.display_name,
            workspace_path=self.workspace_path,
            program=self.program,
            lifecycle_state=self.lifecycle_state,
            attached=self.attached,
            container_name=self.container_ref.container_name if self.container_ref else None,
            multiplexer_session=self.multiplexer_ref.session_name if self.multiplexer_ref else None,
            preview=self.preview_buffer.text,
            failure_reason=self.failure_reason,
            created_at=self.created_at,
            last_accessed=self.last_accessed,
            leaked_resources=tuple(h.name for h in self.leaked_handles),
        )


@dataclass(frozen=True)
class SessionView:  # pylint: disable=too-many-instance-attributes
    """Read-only snapshot of a Session returned by list()/get()."""

    session_id: str
    display_name: str
    workspace_path: str
    program: str
    lifecycle_state: SessionState
    attached: bool
    container_name: Optional[str]
    multiplexer_session: Optional[str]
    preview: str
    failure_reason: Optional[str]
    created_at: datetime
    last_accessed: datetime
    leaked_resources: tuple[str, ...] = ()

    @property
    def status_indicator(self) -> str:
        if self.attached:
            return "◉"
        return {
            SessionState.RUNNING: "●",
            SessionState.STARTING: "◌",
            SessionState.STOPPING: "◌",
            SessionState.STOPPED: "⏸",
            SessionState.FAILED: "✗",
        }.get(self.lifecycle_state, "○")

    def to_dict(self) -> dict[str, object]:
        return {
            "session_id": self.session_id,
            "display_name": self.display_name,
            "workspace_path": self.workspace_path,
            "program": self.program,
            "lifecycle_state": self.lifecycle_state.value,
            "attached": self.attached,
            "container_name": self.container_name,
            "multiplexer_session": self.multiplexer_session,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at.isoformat(),
            "last_accessed": self.last_accessed.isoformat(),
            "leaked_resources": list(self.leaked_resources),
        }


@dataclass(frozen=True)
class LifecycleTransition:
    """One state change, as published on the event stream."""

    session_id: str
    old_state: SessionState
    new_state: SessionState
    reason: str
    at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, object]:
        return {
            "timestamp": self.at.isoformat(),
            "session_id": self.session_id,
            "old": self.old_state.value,
            "new": self.new_state.value,
            "reason": self.reason,
        }
