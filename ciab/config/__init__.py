"""Global configuration management.

Config is loaded at module import time and available globally via:
    from ciab.config import config

Components take their settings as constructor arguments; the global is what
the CLI wires in.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

from ciab.config.loader import DEFAULT_CONFIG_PATH, load_ciab_config
from ciab.config.schema import (
    AttachSettings,
    CiabConfig,
    ContainerSettings,
    MultiplexerSettings,
    PreviewSettings,
    RuntimeSettings,
)

# Load .env (allow override for tests)
_env_path = os.getenv("CIAB_ENV_PATH")
_dotenv_path = Path(_env_path).expanduser() if _env_path else Path.cwd() / ".env"
load_dotenv(_dotenv_path)

_config_path_env = os.getenv("CIAB_CONFIG_PATH")
CONFIG_PATH = Path(_config_path_env).expanduser() if _config_path_env else DEFAULT_CONFIG_PATH.expanduser()

config: CiabConfig = load_ciab_config(CONFIG_PATH)

__all__ = [
    "AttachSettings",
    "CONFIG_PATH",
    "CiabConfig",
    "ContainerSettings",
    "MultiplexerSettings",
    "PreviewSettings",
    "RuntimeSettings",
    "config",
]
