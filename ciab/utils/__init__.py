"""Shared helpers for ciab."""

from __future__ import annotations

import os
import re

_ANSI_PATTERN = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"  # CSI sequences
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC sequences (BEL or ST)
    r"|\x1b[@-Z\\-_]"  # Two-byte escapes
)


def expand_env_vars(config: object) -> object:
    """Recursively expand environment variables in config.

    Replaces ${VAR} patterns with environment variable values. Unknown
    variables are left as-is.
    """
    if isinstance(config, dict):
        return {k: expand_env_vars(v) for k, v in config.items()}
    if isinstance(config, list):
        return [expand_env_vars(item) for item in config]
    if isinstance(config, str):

        def replace_env_var(match: re.Match[str]) -> str:
            return os.getenv(match.group(1), match.group(0))

        return re.sub(r"\$\{([^}]+)\}", replace_env_var, config)
    return config


def strip_ansi_codes(text: str) -> str:
    """Strip ANSI escape codes from text."""
    return _ANSI_PATTERN.sub("", text)


def short_id(session_id: str) -> str:
    """First 8 characters of a session id, for log lines."""
    return session_id[:8]
