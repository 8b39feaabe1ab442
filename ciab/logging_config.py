"""ciab logging configuration.

Logs go to a rotating file (default: `~/.ciab/logs/ciab.log`). Nothing is
written to the terminal: while a session is attached the host terminal
belongs to the remote tmux client, and any stray log line would corrupt it.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
DEFAULT_LOG_PATH = Path("~/.ciab/logs/ciab.log")


def setup_logging(level: Optional[str] = None, log_path: Optional[Path] = None) -> None:
    """Configure ciab logging.

    Args:
        level: Optional override for `CIAB_LOG_LEVEL`.
        log_path: Optional override for `CIAB_LOG_PATH`.
    """
    if level:
        os.environ["CIAB_LOG_LEVEL"] = level

    level_name = os.getenv("CIAB_LOG_LEVEL", "INFO").upper()
    path = log_path or Path(os.getenv("CIAB_LOG_PATH", str(DEFAULT_LOG_PATH))).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)

    handler = logging.handlers.RotatingFileHandler(path, maxBytes=10 * 1024 * 1024, backupCount=3, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger("ciab")
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level_name, logging.INFO))
    root.propagate = False
