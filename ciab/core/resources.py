"""Ownership tokens for externally allocated resources.

A handle is created by whoever acquired the resource (the container backend,
the multiplexer bridge, the pty stream) together with the coroutine that
releases it. Release is idempotent. A release that fails leaves the handle
in the `leaked` state and raises ResourceLeakError so the owner can retry it
later; it is never silently dropped.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from ciab.core.errors import ResourceLeakError

if TYPE_CHECKING:
    from asyncio.subprocess import Process

logger = logging.getLogger(__name__)

ReleaseFn = Callable[[], Awaitable[None]]


class ResourceHandle:
    """Token for one OS-level or container-level resource."""

    kind = "resource"

    def __init__(self, name: str, *, owner: str, release_fn: Optional[ReleaseFn] = None) -> None:
        self.name = name
        self.owner = owner
        self._release_fn = release_fn
        self._released = False
        self._leaked = False
        self._lock = asyncio.Lock()

    @property
    def released(self) -> bool:
        return self._released

    @property
    def leaked(self) -> bool:
        return self._leaked

    def bind_release(self, release_fn: ReleaseFn) -> None:
        """Attach the release coroutine after construction."""
        self._release_fn = release_fn

    def transfer(self, new_owner: str) -> None:
        """Hand the handle to a different component."""
        logger.debug("%s %s ownership %s -> %s", self.kind, self.name, self.owner, new_owner)
        self.owner = new_owner

    async def release(self) -> None:
        """Release the resource.

        Safe to call any number of times; only the first successful call does
        work. Concurrent callers wait for the in-flight release.

        Raises:
            ResourceLeakError: If the release callback failed.
        """
        async with self._lock:
            if self._released:
                return
            if self._release_fn is not None:
                try:
                    await self._release_fn()
                except asyncio.CancelledError:
                    self._leaked = True
                    raise
                except Exception as e:
                    self._leaked = True
                    logger.error("LEAK: failed to release %s %s (owner=%s): %s", self.kind, self.name, self.owner, e)
                    raise ResourceLeakError(self.kind, self.name, e) from e
            self._released = True
            self._leaked = False
            logger.debug("Released %s %s", self.kind, self.name)

    def __repr__(self) -> str:
        state = "released" if self._released else ("leaked" if self._leaked else "held")
        return f"<{type(self).__name__} {self.name} owner={self.owner} {state}>"


class ContainerRef(ResourceHandle):
    """A running container bound to one session's workspace."""

    kind = "container"

    def __init__(
        self,
        container_id: str,
        *,
        container_name: str,
        workspace_path: str,
        owner: str = "controller",
        release_fn: Optional[ReleaseFn] = None,
    ) -> None:
        super().__init__(container_name, owner=owner, release_fn=release_fn)
        self.container_id = container_id
        self.container_name = container_name
        self.workspace_path = workspace_path


class MultiplexerRef(ResourceHandle):
    """A named tmux session living inside a container.

    Also carries the snapshot cache for this session: the last good capture
    and how many captures in a row have failed since.
    """

    kind = "multiplexer"

    def __init__(
        self,
        session_name: str,
        *,
        container: ContainerRef,
        owner: str = "controller",
        release_fn: Optional[ReleaseFn] = None,
    ) -> None:
        super().__init__(session_name, owner=owner, release_fn=release_fn)
        self.session_name = session_name
        self.container = container
        self.last_snapshot: bytes = b""
        self.snapshot_failures = 0


class PtyHandle(ResourceHandle):
    """Master side of a pseudo-terminal plus the client process attached to its slave."""

    kind = "pty"

    def __init__(
        self,
        name: str,
        *,
        master_fd: int,
        process: "Process",
        owner: str = "attach",
        release_fn: Optional[ReleaseFn] = None,
    ) -> None:
        super().__init__(name, owner=owner, release_fn=release_fn)
        self.master_fd = master_fd
        self.process = process
