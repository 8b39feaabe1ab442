"""ciab - run isolated AI coding sessions in containers, one tmux session each."""

__version__ = "0.4.0"
