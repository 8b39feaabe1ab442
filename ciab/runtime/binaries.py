"""Runtime binary resolution policy.

The container engine can be chosen in config (docker or podman); its path is
resolved here. The tmux binary lives inside the container image, so only its
name is policy.
"""

from __future__ import annotations

import shutil

_SUPPORTED_ENGINES: dict[str, str] = {
    "docker": "docker",
    "podman": "podman",
}

_CONTAINER_TMUX_BINARY = "tmux"


def resolve_engine_binary(engine: str) -> str:
    """Resolve the container engine CLI.

    Args:
        engine: Engine key (docker, podman)

    Returns:
        Absolute path when the binary is on PATH, otherwise the bare name so
        the failure surfaces at exec time with a clear error.
    """
    key = engine.strip().lower()
    if key not in _SUPPORTED_ENGINES:
        raise ValueError(f"Unknown container engine '{engine}'")
    name = _SUPPORTED_ENGINES[key]
    return shutil.which(name) or name


def engine_available(engine: str) -> bool:
    """Check if the engine CLI is on PATH."""
    try:
        return shutil.which(_SUPPORTED_ENGINES[engine.strip().lower()]) is not None
    except KeyError:
        return False


def resolve_tmux_binary() -> str:
    """tmux binary name inside session containers."""
    return _CONTAINER_TMUX_BINARY
