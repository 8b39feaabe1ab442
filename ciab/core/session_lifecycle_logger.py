"""Session lifecycle event logging.

Writes one JSON line per lifecycle transition to a dedicated file, next to
the regular log, so a session's history can be reconstructed after the fact.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Callable, Optional

from ciab.core.event_bus import LifecycleEventBus
from ciab.core.models import LifecycleTransition
from ciab.utils import short_id

logger = logging.getLogger(__name__)

DEFAULT_LIFECYCLE_LOG_PATH = Path.home() / ".ciab" / "logs" / "session_lifecycle.jsonl"


def lifecycle_log_path(configured: Optional[str] = None) -> Path:
    """Resolve the JSONL path: explicit setting, then CIAB_LIFECYCLE_LOG, then the default."""
    raw = configured or os.getenv("CIAB_LIFECYCLE_LOG")
    return Path(raw).expanduser() if raw else DEFAULT_LIFECYCLE_LOG_PATH


class SessionLifecycleLogger:
    """Appends lifecycle transitions to a JSON lines file."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path or lifecycle_log_path()

    def log_event(self, event: str, session_id: str, context: Optional[dict[str, object]] = None) -> None:
        """Append one event line. Failures are logged, never raised."""
        event_data: dict[str, object] = {"event": event, "session_id": short_id(session_id)}
        if context:
            event_data.update(context)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(event_data) + "\n")
        except OSError as e:
            logger.warning("Failed to log lifecycle event: %s", e)

    async def on_transition(self, transition: LifecycleTransition) -> None:
        """Event bus handler. The file append runs in a worker thread, off the event loop."""
        payload = transition.to_dict()
        del payload["session_id"]
        await asyncio.to_thread(self.log_event, f"session_{transition.new_state.value}", transition.session_id, payload)

    def attach_to(self, bus: LifecycleEventBus) -> Callable[[], None]:
        return bus.subscribe(self.on_transition)
