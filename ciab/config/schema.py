from typing import Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ciab.constants import (
    ATTACH_INPUT_GRACE_MS,
    ATTACH_READ_TIMEOUT_S,
    CONTAINER_WORKSPACE_MOUNT,
    SUBPROCESS_TIMEOUT_CONTAINER_START,
    SUBPROCESS_TIMEOUT_DEFAULT,
    TMUX_HISTORY_LIMIT,
    TMUX_SESSION_PREFIX,
)


class ContainerSettings(BaseModel):
    model_config = ConfigDict(extra="allow")
    engine: Literal["docker", "podman"] = "docker"
    image: str = "ciab/claude-dev:latest"
    working_dir: str = CONTAINER_WORKSPACE_MOUNT
    memory_limit_mb: Optional[int] = Field(default=None, ge=64)
    cpu_limit: Optional[float] = Field(default=None, gt=0)
    user: Optional[str] = None
    environment: Dict[str, str] = {}
    labels: Dict[str, str] = {}
    # Keeps the container alive independently of the tmux session
    keepalive_command: list[str] = ["sleep", "infinity"]
    stop_grace_seconds: int = Field(default=10, ge=0)
    exec_timeout: float = Field(default=SUBPROCESS_TIMEOUT_DEFAULT, gt=0)
    start_timeout: float = Field(default=SUBPROCESS_TIMEOUT_CONTAINER_START, gt=0)


class MultiplexerSettings(BaseModel):
    model_config = ConfigDict(extra="allow")
    session_prefix: str = TMUX_SESSION_PREFIX
    history_limit: int = Field(default=TMUX_HISTORY_LIMIT, ge=0)
    mouse: bool = True
    cols: int = Field(default=80, ge=10)
    rows: int = Field(default=24, ge=5)
    snapshot_timeout: float = Field(default=0.5, gt=0)
    scrollback_lines: int = Field(default=200, ge=0)

    @field_validator("session_prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        """tmux target syntax reserves ':' and '.'."""
        if not v or any(ch in v for ch in ":. "):
            raise ValueError(f"Invalid session_prefix: {v!r}. Must be non-empty without ':', '.' or spaces")
        return v


class PreviewSettings(BaseModel):
    model_config = ConfigDict(extra="allow")
    interval_ms: int = Field(default=100, ge=10)
    max_consecutive_failures: int = Field(default=50, ge=1)
    max_lines: int = Field(default=2000, ge=1)


class AttachSettings(BaseModel):
    model_config = ConfigDict(extra="allow")
    detach_key: str = "ctrl-q"
    read_timeout: float = Field(default=ATTACH_READ_TIMEOUT_S, gt=0, le=1.0)
    input_grace_ms: int = Field(default=ATTACH_INPUT_GRACE_MS, ge=0)

    @field_validator("detach_key")
    @classmethod
    def validate_detach_key(cls, v: str) -> str:
        """Only single control characters are accepted (ctrl-a .. ctrl-z, ctrl-\\, ctrl-])."""
        key = v.strip().lower()
        if not key.startswith("ctrl-") or len(key) != 6:
            raise ValueError(f"Invalid detach_key: {v}. Expected format: ctrl-<key> (e.g., 'ctrl-q')")
        if key[-1] not in "abcdefghijklmnopqrstuvwxyz\\]":
            raise ValueError(f"Invalid detach_key: {v}. Key must be a letter, '\\\\' or ']'")
        return key

    @property
    def detach_byte(self) -> bytes:
        """Raw byte the terminal sends for the detach key."""
        return bytes([ord(self.detach_key[-1].upper()) & 0x1F])


class RuntimeSettings(BaseModel):
    model_config = ConfigDict(extra="allow")
    # persist: leave containers/tmux running on exit; stop: tear everything down
    shutdown_policy: Literal["persist", "stop"] = "stop"
    program: str = "claude"
    cleanup_orphans_on_startup: bool = False
    lifecycle_log: Optional[str] = None


class CiabConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    container: ContainerSettings = ContainerSettings()
    multiplexer: MultiplexerSettings = MultiplexerSettings()
    preview: PreviewSettings = PreviewSettings()
    attach: AttachSettings = AttachSettings()
    runtime: RuntimeSettings = RuntimeSettings()
