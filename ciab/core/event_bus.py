"""In-process event bus for lifecycle transitions."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable

from ciab.core.models import LifecycleTransition

logger = logging.getLogger(__name__)

TransitionHandler = Callable[[LifecycleTransition], Awaitable[object]]

_STREAM_QUEUE_SIZE = 1000


class LifecycleEventBus:
    """Async publish/subscribe of LifecycleTransition events.

    Handler failures are logged and never reach the publisher.
    """

    def __init__(self) -> None:
        self._handlers: list[TransitionHandler] = []
        self._queues: set[asyncio.Queue[LifecycleTransition]] = set()

    def subscribe(self, handler: TransitionHandler) -> Callable[[], None]:
        """Register a handler; returns a function that removes it again."""
        self._handlers.append(handler)
        logger.debug("Subscribed lifecycle handler (total: %d)", len(self._handlers))

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def clear(self) -> None:
        """Drop all handlers (primarily for tests)."""
        self._handlers.clear()

    async def publish(self, transition: LifecycleTransition) -> None:
        for queue in list(self._queues):
            try:
                queue.put_nowait(transition)
            except asyncio.QueueFull:
                logger.warning("Lifecycle stream consumer is falling behind, dropping %s", transition.new_state.value)

        if not self._handlers:
            return
        results = await asyncio.gather(*(handler(transition) for handler in list(self._handlers)), return_exceptions=True)
        for i, result in enumerate(results):
            if isinstance(result, Exception):
                logger.error(
                    "Lifecycle handler %d failed for %s -> %s: %s",
                    i,
                    transition.old_state.value,
                    transition.new_state.value,
                    result,
                    exc_info=result,
                )

    async def stream(self) -> AsyncIterator[LifecycleTransition]:
        """Pull-style view of the event stream.

        Events are buffered from the first `__anext__` on; the queue is dropped
        when the generator is closed.
        """
        queue: asyncio.Queue[LifecycleTransition] = asyncio.Queue(maxsize=_STREAM_QUEUE_SIZE)
        self._queues.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._queues.discard(queue)
