"""Pytest configuration and shared fakes for ciab tests."""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

# Keep the developer's own ~/.ciab/ciab.yml and .env out of the test run.
os.environ["CIAB_CONFIG_PATH"] = "/nonexistent/ciab-test.yml"
os.environ["CIAB_ENV_PATH"] = "/nonexistent/ciab-test.env"

import pytest

from ciab.config.schema import AttachSettings, CiabConfig, MultiplexerSettings, PreviewSettings
from ciab.core.container_backend import ContainerSpec, ManagedContainer
from ciab.core.errors import ContainerGoneError, ResourceUnavailableError
from ciab.core.multiplexer_bridge import MultiplexerBridge
from ciab.core.process_utils import ProcessOutput
from ciab.core.resources import ContainerRef, MultiplexerRef
from ciab.core.session_lifecycle import SessionLifecycleController


def pytest_collection_modifyitems(config, items):
    """Set per-marker timeouts: unit=5s, integration=30s."""
    for item in items:
        if "unit" in item.keywords or "unit" in item.path.parts:
            item.add_marker(pytest.mark.timeout(5))
        elif "integration" in item.keywords or "integration" in item.path.parts:
            item.add_marker(pytest.mark.timeout(30))


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll `predicate` until it is true, failing the test after `timeout` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within timeout")
        await asyncio.sleep(0.005)


def _target(argv: list[str]) -> str:
    for flag in ("-t", "-s"):
        if flag in argv:
            return argv[argv.index(flag) + 1].lstrip("=")
    return ""


class FakeContainerBackend:
    """In-memory ContainerBackend with a simulated tmux server per container.

    `events` records every acquisition and release as
    (action, kind, container_name, resource_name), in order.
    """

    def __init__(self, *, tmux_installed: bool = True) -> None:
        self.tmux_installed = tmux_installed
        self.containers: dict[str, dict[str, object]] = {}
        self.events: list[tuple[str, str, str, str]] = []
        self.exec_calls: list[list[str]] = []
        self.fail_create: Optional[Exception] = None
        self.fail_remove = 0
        self.capture_delay = 0.0
        self.capture_error: Optional[Exception] = None

    def sessions_in(self, container_name: str) -> dict[str, bytes]:
        return self.containers[container_name]["sessions"]  # type: ignore[return-value]

    def set_screen(self, container_name: str, session_name: str, data: bytes) -> None:
        self.sessions_in(container_name)[session_name] = data

    def live_containers(self) -> list[str]:
        return list(self.containers)

    async def create_and_start(self, workspace_path: str, image_spec: ContainerSpec) -> ContainerRef:
        await asyncio.sleep(0)
        if self.fail_create is not None:
            raise self.fail_create
        name = image_spec.name
        self.containers[name] = {
            "running": True,
            "sessions": {},
            "session_id": image_spec.session_id,
            "workspace": workspace_path,
        }
        self.events.append(("acquire", "container", name, name))
        ref = ContainerRef(f"id-{name}", container_name=name, workspace_path=workspace_path)
        ref.bind_release(lambda: self.stop_and_remove(ref))
        return ref

    async def exec(self, container_ref: ContainerRef, argv: list[str], *, timeout: float) -> ProcessOutput:
        self.exec_calls.append(list(argv))
        name = container_ref.container_name
        container = self.containers.get(name)
        if container is None or not container["running"]:
            raise ContainerGoneError(f"Container {name} unavailable: No such container")

        if argv[:2] == ["sh", "-c"]:
            if self.tmux_installed:
                return ProcessOutput(0, b"/usr/bin/tmux\n", b"")
            return ProcessOutput(127, b"", b"")
        if not self.tmux_installed:
            return ProcessOutput(127, b"", b"sh: tmux: not found")

        sessions = self.sessions_in(name)
        command = argv[1]
        target = _target(argv)
        if command == "has-session":
            return ProcessOutput(0 if target in sessions else 1, b"", b"" if target in sessions else b"can't find session")
        if command == "new-session":
            sessions[target] = b""
            self.events.append(("acquire", "multiplexer", name, target))
            return ProcessOutput(0, b"", b"")
        if command == "kill-session":
            if target not in sessions:
                return ProcessOutput(1, b"", f"can't find session: {target}".encode())
            del sessions[target]
            self.events.append(("release", "multiplexer", name, target))
            return ProcessOutput(0, b"", b"")
        if command == "capture-pane":
            if self.capture_delay:
                await asyncio.sleep(self.capture_delay)
            if self.capture_error is not None:
                raise self.capture_error
            if target not in sessions:
                return ProcessOutput(1, b"", f"can't find session: {target}".encode())
            return ProcessOutput(0, sessions[target], b"")
        return ProcessOutput(0, b"", b"")

    async def stop_and_remove(self, container_ref: ContainerRef) -> None:
        await asyncio.sleep(0)
        if self.fail_remove > 0:
            self.fail_remove -= 1
            raise ResourceUnavailableError("engine hiccup")
        name = container_ref.container_name
        if self.containers.pop(name, None) is not None:
            self.events.append(("release", "container", name, name))

    async def is_running(self, container_ref: ContainerRef) -> bool:
        container = self.containers.get(container_ref.container_name)
        return bool(container and container["running"])

    def interactive_argv(self, container_ref: ContainerRef, argv: list[str]) -> list[str]:
        return ["fake-engine", "exec", "-it", container_ref.container_name, *argv]

    async def list_managed(self) -> list[ManagedContainer]:
        return [
            ManagedContainer(
                container_id=f"id-{name}",
                name=name,
                session_id=str(info["session_id"]),
                state="running" if info["running"] else "exited",
                workspace_path=str(info.get("workspace", "")),
            )
            for name, info in self.containers.items()
        ]


class FakeStream:
    """DuplexByteStream that behaves like a tiny shell: `echo X` prints X."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[bytes] = asyncio.Queue()
        self._line = b""
        self.closed = False
        self.written = bytearray()
        self.sizes: list[tuple[int, int]] = []

    async def read(self, timeout: float) -> Optional[bytes]:
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def write(self, data: bytes) -> None:
        if self.closed:
            raise BrokenPipeError("closed")
        self.written += data
        self._line += data
        while b"\n" in self._line:
            line, self._line = self._line.split(b"\n", 1)
            output = line + b"\r\n"
            if line.startswith(b"echo "):
                output += line[5:] + b"\r\n"
            self._queue.put_nowait(output)

    def resize(self, cols: int, rows: int) -> None:
        self.sizes.append((cols, rows))

    async def close(self) -> None:
        self.closed = True

    def hang_up(self) -> None:
        self._queue.put_nowait(b"")


class StreamBridge(MultiplexerBridge):
    """MultiplexerBridge whose interactive streams are FakeStreams instead of pty clients."""

    def __init__(self, *args: object, **kwargs: object) -> None:
        super().__init__(*args, **kwargs)  # type: ignore[arg-type]
        self.streams: list[FakeStream] = []
        self.connect_delay = 0.0

    async def _connect(self, ref: MultiplexerRef, cols: int, rows: int) -> FakeStream:
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        stream = FakeStream()
        stream.resize(cols, rows)
        self.streams.append(stream)
        return stream


class FakeHostTerminal:
    """HostTerminal that records its mode instead of touching a real device."""

    def __init__(self, cols: int = 120, rows: int = 40) -> None:
        self.mode = "cooked"
        self.modes_seen: list[str] = []
        self.output = bytearray()
        self.cols = cols
        self.rows = rows
        self.resize_callbacks: list[Callable[[int, int], None]] = []
        self._input: asyncio.Queue[bytes] = asyncio.Queue()

    @asynccontextmanager
    async def foreground(self) -> AsyncIterator[None]:
        baseline = self.mode
        self.mode = "raw"
        self.modes_seen.append("raw")
        try:
            yield
        finally:
            self.mode = baseline
            self.modes_seen.append(baseline)

    def feed(self, data: bytes) -> None:
        self._input.put_nowait(data)

    async def read(self, timeout: float) -> Optional[bytes]:
        try:
            return await asyncio.wait_for(self._input.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def write(self, data: bytes) -> None:
        self.output += data

    def size(self) -> tuple[int, int]:
        return self.cols, self.rows

    def watch_resize(self, callback: Callable[[int, int], None]) -> Callable[[], None]:
        self.resize_callbacks.append(callback)
        return lambda: self.resize_callbacks.remove(callback)

    def resize(self, cols: int, rows: int) -> None:
        self.cols, self.rows = cols, rows
        for callback in list(self.resize_callbacks):
            callback(cols, rows)


@pytest.fixture
def ciab_config() -> CiabConfig:
    return CiabConfig(
        multiplexer=MultiplexerSettings(snapshot_timeout=0.5),
        preview=PreviewSettings(interval_ms=10, max_consecutive_failures=3),
        attach=AttachSettings(read_timeout=0.01, input_grace_ms=0),
    )


@pytest.fixture
def backend() -> FakeContainerBackend:
    return FakeContainerBackend()


@pytest.fixture
def bridge(backend: FakeContainerBackend, ciab_config: CiabConfig) -> StreamBridge:
    return StreamBridge(backend, ciab_config.multiplexer, exec_timeout=1.0)


@pytest.fixture
def terminal() -> FakeHostTerminal:
    return FakeHostTerminal()


@pytest.fixture
def controller(
    backend: FakeContainerBackend, bridge: StreamBridge, ciab_config: CiabConfig, terminal: FakeHostTerminal
) -> SessionLifecycleController:
    return SessionLifecycleController(backend, bridge, ciab_config, terminal=terminal)
