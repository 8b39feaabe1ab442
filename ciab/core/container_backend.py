"""Container backend: the narrow contract the session runtime needs from a container engine.

The controller depends only on the ContainerBackend protocol. DockerCliBackend
is the adapter for docker-compatible CLIs (docker, podman); it drives the CLI
through bounded subprocesses so nothing engine-specific leaks into the core.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol, runtime_checkable

from ciab.config.schema import ContainerSettings
from ciab.constants import (
    CONTAINER_LABEL_MANAGED,
    CONTAINER_LABEL_SESSION_ID,
    CONTAINER_LABEL_WORKSPACE,
    CONTAINER_NAME_PREFIX,
    CONTAINER_WORKSPACE_MOUNT,
    SUBPROCESS_TIMEOUT_QUICK,
)
from ciab.core.errors import ContainerGoneError, MissingDependencyError, ResourceUnavailableError
from ciab.core.process_utils import ProcessOutput, run_command
from ciab.core.resources import ContainerRef
from ciab.runtime.binaries import resolve_engine_binary

logger = logging.getLogger(__name__)

_UNREACHABLE_MARKERS = (
    "cannot connect to the docker daemon",
    "is the docker daemon running",
    "error during connect",
    "cannot connect to podman",
)
_ABSENT_MARKERS = ("no such container", "no such object", "no container with name or id")
_NOT_RUNNING_MARKERS = ("is not running", "container state improper", "is paused")


@dataclass
class ContainerSpec:  # pylint: disable=too-many-instance-attributes
    """What to run for one session (image plus resource limits)."""

    image: str
    name: str
    session_id: str
    working_dir: str = CONTAINER_WORKSPACE_MOUNT
    command: list[str] = field(default_factory=lambda: ["sleep", "infinity"])
    environment: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    memory_limit_mb: Optional[int] = None
    cpu_limit: Optional[float] = None
    user: Optional[str] = None

    @classmethod
    def for_session(cls, session_id: str, settings: ContainerSettings) -> "ContainerSpec":
        """Build the container spec for a session from its settings."""
        return cls(
            image=settings.image,
            name=f"{CONTAINER_NAME_PREFIX}{session_id}",
            session_id=session_id,
            working_dir=settings.working_dir,
            command=list(settings.keepalive_command),
            environment=dict(settings.environment),
            labels=dict(settings.labels),
            memory_limit_mb=settings.memory_limit_mb,
            cpu_limit=settings.cpu_limit,
            user=settings.user,
        )


@dataclass(frozen=True)
class ManagedContainer:
    """A container carrying our management label, as listed by the engine."""

    container_id: str
    name: str
    session_id: str
    state: str
    workspace_path: str = ""


@runtime_checkable
class ContainerBackend(Protocol):
    """Operations the runtime needs from a container engine."""

    async def create_and_start(self, workspace_path: str, image_spec: ContainerSpec) -> ContainerRef:
        """Create and start a container with the workspace bind-mounted.

        Raises:
            ResourceUnavailableError: Engine unreachable, image missing, or start failed
            MissingDependencyError: The engine CLI is not installed on the host
        """
        ...

    async def exec(self, container_ref: ContainerRef, argv: list[str], *, timeout: float) -> ProcessOutput:
        """Run a command inside the container and capture its output.

        Non-zero exit codes are returned, not raised.

        Raises:
            ContainerGoneError: The container is gone or not running
            ResourceUnavailableError: The engine is unreachable
            SubprocessTimeoutError: The command exceeded `timeout`
        """
        ...

    async def stop_and_remove(self, container_ref: ContainerRef) -> None:
        """Stop and remove the container. An already-absent container is success."""
        ...

    async def is_running(self, container_ref: ContainerRef) -> bool:
        """Health probe."""
        ...

    def interactive_argv(self, container_ref: ContainerRef, argv: list[str]) -> list[str]:
        """Host command line that runs `argv` in the container with a TTY attached."""
        ...

    async def list_managed(self) -> list[ManagedContainer]:
        """All containers carrying the management label."""
        ...


def _matches(text: str, markers: tuple[str, ...]) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in markers)


class DockerCliBackend:
    """ContainerBackend adapter for docker-compatible CLIs."""

    def __init__(self, settings: ContainerSettings) -> None:
        self.settings = settings
        self.engine = settings.engine
        self.binary = resolve_engine_binary(settings.engine)

    async def _run(self, *args: str, timeout: float, operation: str) -> ProcessOutput:
        try:
            result = await run_command([self.binary, *args], timeout=timeout, operation=operation)
        except FileNotFoundError as e:
            raise MissingDependencyError(self.engine, "host PATH") from e
        except OSError as e:
            raise ResourceUnavailableError(f"Cannot run {self.binary}: {e}") from e
        if not result.ok and _matches(result.stderr_text, _UNREACHABLE_MARKERS):
            raise ResourceUnavailableError(f"{self.engine} engine unreachable: {result.stderr_text}")
        return result

    def _run_args(self, workspace_path: str, spec: ContainerSpec) -> list[str]:
        args = [
            "run",
            "-d",
            "--init",
            "--name",
            spec.name,
            "--label",
            f"{CONTAINER_LABEL_MANAGED}=true",
            "--label",
            f"{CONTAINER_LABEL_SESSION_ID}={spec.session_id}",
            "--label",
            f"{CONTAINER_LABEL_WORKSPACE}={workspace_path}",
            "--mount",
            f"type=bind,source={workspace_path},target={spec.working_dir}",
            "-w",
            spec.working_dir,
            "--log-opt",
            "max-size=10m",
            "--log-opt",
            "max-file=3",
        ]
        for key, value in spec.labels.items():
            args.extend(["--label", f"{key}={value}"])
        for key, value in spec.environment.items():
            args.extend(["-e", f"{key}={value}"])
        if spec.memory_limit_mb:
            args.extend(["--memory", f"{spec.memory_limit_mb}m"])
        if spec.cpu_limit:
            args.extend(["--cpus", str(spec.cpu_limit)])
        if spec.user:
            args.extend(["--user", spec.user])
        args.append(spec.image)
        args.extend(spec.command)
        return args

    async def create_and_start(self, workspace_path: str, image_spec: ContainerSpec) -> ContainerRef:
        # Clear stale state from a previous run with the same name
        await self._run("rm", "-f", image_spec.name, timeout=SUBPROCESS_TIMEOUT_QUICK, operation="container rm")

        logger.info("Starting container %s (image=%s)", image_spec.name, image_spec.image)
        result = await self._run(
            *self._run_args(workspace_path, image_spec),
            timeout=self.settings.start_timeout,
            operation=f"container run {image_spec.name}",
        )
        if not result.ok:
            raise ResourceUnavailableError(
                f"Failed to start container {image_spec.name}: {result.stderr_text or result.returncode}",
                session_id=image_spec.session_id,
            )

        container_id = result.stdout_text.strip().splitlines()[-1] if result.stdout.strip() else image_spec.name
        ref = ContainerRef(container_id, container_name=image_spec.name, workspace_path=workspace_path)
        ref.bind_release(lambda: self.stop_and_remove(ref))
        logger.info("Started container %s (%s)", image_spec.name, container_id[:12])
        return ref

    async def exec(self, container_ref: ContainerRef, argv: list[str], *, timeout: float) -> ProcessOutput:
        result = await self._run(
            "exec",
            container_ref.container_name,
            *argv,
            timeout=timeout,
            operation=f"exec {argv[0] if argv else ''} in {container_ref.container_name}",
        )
        if not result.ok and _matches(result.stderr_text, _ABSENT_MARKERS + _NOT_RUNNING_MARKERS):
            raise ContainerGoneError(
                f"Container {container_ref.container_name} unavailable: {result.stderr_text}"
            )
        return result

    async def stop_and_remove(self, container_ref: ContainerRef) -> None:
        name = container_ref.container_name
        logger.info("Stopping container %s", name)
        await self._run(
            "stop",
            "-t",
            str(self.settings.stop_grace_seconds),
            name,
            timeout=self.settings.stop_grace_seconds + self.settings.exec_timeout,
            operation=f"container stop {name}",
        )
        result = await self._run("rm", "-f", name, timeout=self.settings.exec_timeout, operation=f"container rm {name}")
        if result.ok or _matches(result.stderr_text, _ABSENT_MARKERS):
            logger.info("Removed container %s", name)
            return
        raise ResourceUnavailableError(f"Failed to remove container {name}: {result.stderr_text}")

    async def is_running(self, container_ref: ContainerRef) -> bool:
        result = await self._run(
            "inspect",
            "-f",
            "{{.State.Running}}",
            container_ref.container_name,
            timeout=SUBPROCESS_TIMEOUT_QUICK,
            operation=f"inspect {container_ref.container_name}",
        )
        return result.ok and result.stdout_text.strip() == "true"

    def interactive_argv(self, container_ref: ContainerRef, argv: list[str]) -> list[str]:
        return [self.binary, "exec", "-it", "-e", "TERM=xterm-256color", container_ref.container_name, *argv]

    async def list_managed(self) -> list[ManagedContainer]:
        result = await self._run(
            "ps",
            "-a",
            "--filter",
            f"label={CONTAINER_LABEL_MANAGED}=true",
            "--format",
            '{{.ID}}\t{{.Names}}\t{{.Label "'
            + CONTAINER_LABEL_SESSION_ID
            + '"}}\t{{.State}}\t{{.Label "'
            + CONTAINER_LABEL_WORKSPACE
            + '"}}',
            timeout=self.settings.exec_timeout,
            operation="list managed containers",
        )
        if not result.ok:
            raise ResourceUnavailableError(f"Failed to list containers: {result.stderr_text}")

        containers: list[ManagedContainer] = []
        for line in result.stdout_text.splitlines():
            parts = line.split("\t")
            if len(parts) != 5:
                continue
            containers.append(
                ManagedContainer(
                    container_id=parts[0],
                    name=parts[1],
                    session_id=parts[2],
                    state=parts[3],
                    workspace_path=parts[4],
                )
            )
        return containers
