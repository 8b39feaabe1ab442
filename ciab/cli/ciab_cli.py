"""ciab: run a coding agent in a container and attach to it."""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ciab import __version__
from ciab.config import config
from ciab.config.schema import CiabConfig
from ciab.core.errors import SessionRuntimeError
from ciab.core.session_lifecycle import SessionLifecycleController
from ciab.core.session_lifecycle_logger import SessionLifecycleLogger, lifecycle_log_path
from ciab.logging_config import setup_logging


@dataclass
class CiabCommand:
    action: str  # "run" | "cleanup" | "version"
    name: Optional[str] = None
    workspace: Optional[str] = None
    program: Optional[str] = None
    image: Optional[str] = None


def _usage() -> str:
    return (
        "Usage:\n"
        "  ciab run --name NAME [--program PROGRAM] [--image IMAGE] WORKSPACE\n"
        "  ciab cleanup               # remove containers left behind by earlier runs\n"
        "  ciab version\n"
        "\n"
        "Press the detach key (default Ctrl+Q) to leave an attached session.\n"
    )


def _parse_run(args: list[str]) -> CiabCommand:
    command = CiabCommand(action="run")
    options = {"--name": "name", "--program": "program", "--image": "image"}
    positional: list[str] = []
    i = 0
    while i < len(args):
        arg = args[i]
        if arg in options:
            if i + 1 >= len(args):
                raise ValueError(f"{arg} requires a value\n\n{_usage()}")
            setattr(command, options[arg], args[i + 1])
            i += 2
            continue
        if arg.startswith("--"):
            raise ValueError(f"Unknown option: {arg}\n\n{_usage()}")
        positional.append(arg)
        i += 1

    if not command.name:
        raise ValueError(f"--name is required\n\n{_usage()}")
    if len(positional) != 1:
        raise ValueError(_usage())
    command.workspace = positional[0]
    return command


def parse_ciab_command(argv: list[str]) -> CiabCommand:
    if not argv:
        raise ValueError(_usage())

    action, args = argv[0], argv[1:]
    if action == "run":
        return _parse_run(args)
    if action in {"cleanup", "version"}:
        if args:
            raise ValueError(_usage())
        return CiabCommand(action=action)
    raise ValueError(_usage())


def _effective_config(command: CiabCommand) -> CiabConfig:
    cfg = config.model_copy(deep=True)
    if command.image:
        cfg.container.image = command.image
    return cfg


def _resolve_workspace(raw: str) -> str:
    path = Path(raw).expanduser().resolve()
    if not path.is_dir():
        raise ValueError(f"workspace is not a directory: {path}")
    return str(path)


async def _run_session(cfg: CiabConfig, command: CiabCommand, workspace: str) -> str:
    if command.name is None:
        raise ValueError("run requires --name")
    controller = SessionLifecycleController.from_config(cfg)
    SessionLifecycleLogger(lifecycle_log_path(cfg.runtime.lifecycle_log)).attach_to(controller.event_bus)
    await controller.startup()
    try:
        session_id = await controller.create(command.name, workspace, command.program)
        await controller.start(session_id)
        reason = await controller.attach(session_id)
        return reason.value
    finally:
        await controller.shutdown()


async def _cleanup(cfg: CiabConfig) -> int:
    controller = SessionLifecycleController.from_config(cfg)
    try:
        return await controller.cleanup_orphans()
    finally:
        await controller.shutdown()


def _main_impl() -> None:
    try:
        parsed = parse_ciab_command(sys.argv[1:])
    except ValueError as exc:
        sys.stderr.write(f"{exc}\n")
        sys.exit(1)

    if parsed.action == "version":
        sys.stdout.write(f"ciab {__version__}\n")
        return

    setup_logging()
    cfg = _effective_config(parsed)

    if parsed.action == "cleanup":
        try:
            removed = asyncio.run(_cleanup(cfg))
        except SessionRuntimeError as exc:
            sys.stderr.write(f"ciab error: {exc}\n")
            sys.exit(1)
        sys.stdout.write(f"Removed {removed} orphan container(s)\n")
        return

    if not sys.stdin.isatty() or not sys.stdout.isatty():
        sys.stderr.write("ciab error: run needs an interactive terminal\n")
        sys.exit(1)

    try:
        workspace = _resolve_workspace(parsed.workspace or "")
        reason = asyncio.run(_run_session(cfg, parsed, workspace))
    except (ValueError, SessionRuntimeError) as exc:
        sys.stderr.write(f"ciab error: {exc}\n")
        sys.exit(1)

    kept = "kept running" if cfg.runtime.shutdown_policy == "persist" else "stopped"
    sys.stdout.write(f"Detached from {parsed.name} ({reason}); session {kept}\n")


def main() -> None:
    try:
        _main_impl()
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
