"""Unit tests for the docker CLI container backend."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from ciab.config.schema import ContainerSettings
from ciab.core.container_backend import ContainerBackend, ContainerSpec, DockerCliBackend
from ciab.core.errors import ContainerGoneError, MissingDependencyError, ResourceUnavailableError
from ciab.core.process_utils import ProcessOutput
from ciab.core.resources import ContainerRef


def _ok(stdout: bytes = b"") -> ProcessOutput:
    return ProcessOutput(0, stdout, b"")


def _fail(stderr: bytes, code: int = 1) -> ProcessOutput:
    return ProcessOutput(code, b"", stderr)


@pytest.fixture
def settings() -> ContainerSettings:
    return ContainerSettings(memory_limit_mb=1024, cpu_limit=2.0, environment={"FOO": "bar"})


@pytest.fixture
def docker(settings: ContainerSettings) -> DockerCliBackend:
    return DockerCliBackend(settings)


def _ref() -> ContainerRef:
    return ContainerRef("abc123", container_name="ciab-session-s1", workspace_path="/tmp/ws")


def test_docker_backend_satisfies_protocol(docker: DockerCliBackend):
    """Test that the adapter implements the ContainerBackend contract."""
    assert isinstance(docker, ContainerBackend)


def test_spec_for_session(settings: ContainerSettings):
    """Test that a ContainerSpec carries the session-derived name and limits."""
    spec = ContainerSpec.for_session("s1", settings)

    assert spec.name == "ciab-session-s1"
    assert spec.working_dir == "/workspace"
    assert spec.command == ["sleep", "infinity"]
    assert spec.memory_limit_mb == 1024


@pytest.mark.asyncio
async def test_create_and_start_builds_run_command(docker: DockerCliBackend, settings: ContainerSettings):
    """Test the run invocation: labels, bind mount, log rotation and limits."""
    mock_run = AsyncMock(side_effect=[_ok(), _ok(b"f00dcafe\n")])
    with patch("ciab.core.container_backend.run_command", mock_run):
        ref = await docker.create_and_start("/tmp/ws", ContainerSpec.for_session("s1", settings))

    rm_argv = mock_run.await_args_list[0].args[0]
    run_argv = mock_run.await_args_list[1].args[0]
    assert rm_argv[1:] == ["rm", "-f", "ciab-session-s1"]
    assert run_argv[1:5] == ["run", "-d", "--init", "--name"]
    assert "ciab-managed=true" in run_argv
    assert "ciab-session-id=s1" in run_argv
    assert "ciab-workspace=/tmp/ws" in run_argv
    assert "type=bind,source=/tmp/ws,target=/workspace" in run_argv
    assert "max-size=10m" in run_argv and "max-file=3" in run_argv
    assert run_argv[run_argv.index("--memory") + 1] == "1024m"
    assert run_argv[run_argv.index("--cpus") + 1] == "2.0"
    assert "FOO=bar" in run_argv
    assert run_argv[-3:] == ["ciab/claude-dev:latest", "sleep", "infinity"]
    assert ref.container_id == "f00dcafe"
    assert ref.container_name == "ciab-session-s1"


@pytest.mark.asyncio
async def test_create_failure_is_resource_unavailable(docker: DockerCliBackend, settings: ContainerSettings):
    """Test that a failed `run` surfaces as ResourceUnavailableError."""
    mock_run = AsyncMock(side_effect=[_ok(), _fail(b"Unable to find image 'nope:latest' locally")])
    with patch("ciab.core.container_backend.run_command", mock_run):
        with pytest.raises(ResourceUnavailableError) as exc_info:
            await docker.create_and_start("/tmp/ws", ContainerSpec.for_session("s1", settings))

    assert "Unable to find image" in str(exc_info.value)


@pytest.mark.asyncio
async def test_unreachable_engine(docker: DockerCliBackend):
    """Test that a down daemon maps to ResourceUnavailableError on any call."""
    mock_run = AsyncMock(return_value=_fail(b"Cannot connect to the Docker daemon at unix:///var/run/docker.sock"))
    with patch("ciab.core.container_backend.run_command", mock_run):
        with pytest.raises(ResourceUnavailableError):
            await docker.exec(_ref(), ["tmux", "ls"], timeout=1.0)


@pytest.mark.asyncio
async def test_missing_engine_binary(docker: DockerCliBackend):
    """Test that a missing docker CLI maps to MissingDependencyError."""
    mock_run = AsyncMock(side_effect=FileNotFoundError("docker"))
    with patch("ciab.core.container_backend.run_command", mock_run):
        with pytest.raises(MissingDependencyError) as exc_info:
            await docker.is_running(_ref())

    assert exc_info.value.binary == "docker"


@pytest.mark.asyncio
async def test_engine_os_error_is_resource_unavailable(docker: DockerCliBackend):
    """Test that an engine CLI that cannot be executed maps to ResourceUnavailableError."""
    mock_run = AsyncMock(side_effect=PermissionError(13, "Permission denied", "docker"))
    with patch("ciab.core.container_backend.run_command", mock_run):
        with pytest.raises(ResourceUnavailableError) as exc_info:
            await docker.is_running(_ref())

    assert not isinstance(exc_info.value, MissingDependencyError)
    assert isinstance(exc_info.value.__cause__, PermissionError)


@pytest.mark.asyncio
async def test_exec_returns_nonzero_exit_codes(docker: DockerCliBackend):
    """Test that exec reports command failures as output, not exceptions."""
    mock_run = AsyncMock(return_value=_fail(b"can't find session: ciab_x"))
    with patch("ciab.core.container_backend.run_command", mock_run):
        result = await docker.exec(_ref(), ["tmux", "has-session", "-t", "ciab_x"], timeout=1.0)

    assert result.returncode == 1
    assert mock_run.await_args.args[0][1:4] == ["exec", "ciab-session-s1", "tmux"]


@pytest.mark.asyncio
async def test_exec_against_missing_container(docker: DockerCliBackend):
    """Test that exec into an absent container raises ContainerGoneError."""
    mock_run = AsyncMock(return_value=_fail(b"Error response from daemon: No such container: ciab-session-s1"))
    with patch("ciab.core.container_backend.run_command", mock_run):
        with pytest.raises(ContainerGoneError):
            await docker.exec(_ref(), ["tmux", "ls"], timeout=1.0)


@pytest.mark.asyncio
async def test_stop_and_remove_absent_container_is_success(docker: DockerCliBackend):
    """Test idempotent removal: 'No such container' counts as done."""
    mock_run = AsyncMock(
        side_effect=[
            _fail(b"Error response from daemon: No such container: ciab-session-s1"),
            _fail(b"Error: No such container: ciab-session-s1"),
        ]
    )
    with patch("ciab.core.container_backend.run_command", mock_run):
        await docker.stop_and_remove(_ref())

    assert mock_run.await_args_list[0].args[0][1:3] == ["stop", "-t"]
    assert mock_run.await_args_list[1].args[0][1:] == ["rm", "-f", "ciab-session-s1"]


@pytest.mark.asyncio
async def test_stop_and_remove_real_failure_raises(docker: DockerCliBackend):
    """Test that an unexpected rm failure is raised so the handle is kept as leaked."""
    mock_run = AsyncMock(side_effect=[_ok(), _fail(b"device or resource busy")])
    with patch("ciab.core.container_backend.run_command", mock_run):
        with pytest.raises(ResourceUnavailableError):
            await docker.stop_and_remove(_ref())


@pytest.mark.asyncio
async def test_is_running(docker: DockerCliBackend):
    """Test the health probe reading State.Running."""
    with patch("ciab.core.container_backend.run_command", AsyncMock(return_value=_ok(b"true\n"))):
        assert await docker.is_running(_ref()) is True
    with patch("ciab.core.container_backend.run_command", AsyncMock(return_value=_ok(b"false\n"))):
        assert await docker.is_running(_ref()) is False


@pytest.mark.asyncio
async def test_list_managed_parses_ps_output(docker: DockerCliBackend):
    """Test listing containers carrying the management label."""
    output = (
        b"aaa\tciab-session-s1\ts1\trunning\t/home/dev/repo\n"
        b"bbb\tciab-session-s2\ts2\texited\t\n"
        b"malformed line\n"
    )
    with patch("ciab.core.container_backend.run_command", AsyncMock(return_value=_ok(output))):
        containers = await docker.list_managed()

    assert [c.name for c in containers] == ["ciab-session-s1", "ciab-session-s2"]
    assert containers[1].session_id == "s2"
    assert containers[1].state == "exited"
    assert containers[0].workspace_path == "/home/dev/repo"
    assert containers[1].workspace_path == ""


def test_interactive_argv(docker: DockerCliBackend):
    """Test the host command line for an interactive tmux client."""
    argv = docker.interactive_argv(_ref(), ["tmux", "attach-session", "-t", "ciab_demo"])

    assert argv[1:] == [
        "exec",
        "-it",
        "-e",
        "TERM=xterm-256color",
        "ciab-session-s1",
        "tmux",
        "attach-session",
        "-t",
        "ciab_demo",
    ]
