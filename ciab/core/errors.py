"""Typed errors returned by the session runtime.

Every command on the controller either returns a result or raises one of
these. `code` is stable and is what the event stream and the CLI report.
"""

from __future__ import annotations

from typing import Optional


class SessionRuntimeError(Exception):
    """Base class for all session runtime errors."""

    code = "runtime_error"

    def __init__(self, message: str, *, session_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.session_id = session_id


class InvalidRequestError(SessionRuntimeError):
    """Bad input, duplicate name or a command against the wrong state. Never retried."""

    code = "invalid_request"


class SessionNotFoundError(InvalidRequestError):
    """No session with the given id."""

    code = "not_found"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}", session_id=session_id)


class ResourceUnavailableError(SessionRuntimeError):
    """Container engine unreachable or a required resource could not be created."""

    code = "resource_unavailable"


class MissingDependencyError(ResourceUnavailableError):
    """A binary the runtime depends on is missing (e.g. tmux inside the container)."""

    code = "missing_dependency"

    def __init__(self, binary: str, where: str, *, session_id: Optional[str] = None) -> None:
        super().__init__(f"{binary} not installed in {where}", session_id=session_id)
        self.binary = binary
        self.where = where


class OperationTimeoutError(SessionRuntimeError):
    """A bounded exec/snapshot/stream call exceeded its timeout."""

    code = "timeout"

    def __init__(self, operation: str, timeout: float, *, session_id: Optional[str] = None) -> None:
        super().__init__(f"{operation} timed out after {timeout}s", session_id=session_id)
        self.operation = operation
        self.timeout = timeout


class ConflictError(SessionRuntimeError):
    """Another session is attached, or the session is mid-transition."""

    code = "conflict"


class StreamAlreadyOpenError(ConflictError):
    """A second interactive stream was requested for the same multiplexer session.

    This is a programming error in the caller, not a transient I/O failure.
    """

    code = "stream_already_open"


class ResourceLeakError(SessionRuntimeError):
    """A release call failed; the resource may still exist."""

    code = "resource_leak"

    def __init__(self, kind: str, name: str, cause: BaseException) -> None:
        super().__init__(f"Failed to release {kind} {name}: {cause}")
        self.kind = kind
        self.name = name
        self.cause = cause


class ContainerGoneError(ResourceUnavailableError):
    """The container no longer exists or is not running."""

    code = "container_gone"
