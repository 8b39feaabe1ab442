"""Constants used across ciab.

Internal policy values that are not user-configurable live here; anything
an operator may want to change is in the config schema instead.
"""

# Multiplexer naming
TMUX_SESSION_PREFIX = "ciab_"
TMUX_HISTORY_LIMIT = 10000

# Container labels (used to find sessions we own)
CONTAINER_LABEL_MANAGED = "ciab-managed"
CONTAINER_LABEL_SESSION_ID = "ciab-session-id"
CONTAINER_LABEL_WORKSPACE = "ciab-workspace"
CONTAINER_NAME_PREFIX = "ciab-session-"
CONTAINER_WORKSPACE_MOUNT = "/workspace"

# Subprocess timeouts (seconds)
SUBPROCESS_TIMEOUT_QUICK = 5.0
SUBPROCESS_TIMEOUT_DEFAULT = 30.0
SUBPROCESS_TIMEOUT_CONTAINER_START = 120.0


# Attach forwarding
ATTACH_READ_CHUNK = 4096
ATTACH_READ_TIMEOUT_S = 0.05  # One I/O read cycle; bounds cancellation latency
ATTACH_INPUT_GRACE_MS = 50  # Drop terminal noise right after mode switch

# Exit codes that mean "binary not found" in a container exec
EXEC_NOT_FOUND_EXIT_CODES = frozenset({126, 127})

# Terminal control sequences
ALT_SCREEN_ENTER = b"\x1b[?1049h"
ALT_SCREEN_LEAVE = b"\x1b[?1049l"
CLEAR_SCREEN = b"\x1b[2J\x1b[H"
CURSOR_SHOW = b"\x1b[?25h"
