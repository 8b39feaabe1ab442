"""Cleanup of containers left behind by earlier runs.

A managed container is an orphan when no live session in the current process
owns it and nothing else can be using it either: it has exited, or the
workspace it was started on no longer exists. Running containers with a live
workspace may belong to another `ciab` process, or to a run that exited with
the `persist` shutdown policy, and are left alone.
"""

import logging
import os
from typing import Iterable

from ciab.core.container_backend import ContainerBackend, ManagedContainer
from ciab.core.errors import SessionRuntimeError
from ciab.core.resources import ContainerRef
from ciab.utils import short_id

logger = logging.getLogger(__name__)


def is_orphan(container: ManagedContainer) -> bool:
    """Whether a managed container is stale: exited, or its workspace is gone."""
    if container.state != "running":
        return True
    return bool(container.workspace_path) and not os.path.isdir(container.workspace_path)


async def cleanup_orphan_container(backend: ContainerBackend, container: ManagedContainer) -> bool:
    """Stop and remove a single orphaned container.

    Returns:
        True if the container was removed
    """
    ref = ContainerRef(
        container.container_id, container_name=container.name, workspace_path=container.workspace_path, owner="cleanup"
    )
    try:
        await backend.stop_and_remove(ref)
    except SessionRuntimeError as e:
        logger.warning("Failed to remove orphan container %s: %s", container.name, e)
        return False
    logger.info(
        "Removed orphan container %s (session %s, %s)", container.name, short_id(container.session_id), container.state
    )
    return True


async def cleanup_orphan_containers(backend: ContainerBackend, owned_names: Iterable[str]) -> int:
    """Find and remove all stale managed containers not in `owned_names`.

    Returns:
        Number of containers removed

    Raises:
        ResourceUnavailableError: The engine could not list containers
    """
    owned = set(owned_names)
    managed = await backend.list_managed()
    orphans = [c for c in managed if c.name not in owned and is_orphan(c)]
    if not orphans:
        logger.debug("No orphan containers found (%d managed)", len(managed))
        return 0

    logger.info("Found %d orphan containers", len(orphans))
    cleaned_count = 0
    for container in orphans:
        if await cleanup_orphan_container(backend, container):
            cleaned_count += 1
    return cleaned_count
