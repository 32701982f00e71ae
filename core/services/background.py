"""Fire-and-forget dispatch for work that must not block or fail a mutation."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegenerationRequest:
    """Signal that the response after `from_sequence` should be regenerated."""

    conversation_id: str
    user_id: str
    from_sequence: int


RegenerationHandler = Callable[[RegenerationRequest], Awaitable[None]]


class BackgroundDispatcher:
    """
    Schedules coroutines on the running loop without awaiting them.

    Each submitted coroutine runs at most once. Failures are logged and never
    reach the caller. Task references are held until completion so they are
    not garbage collected mid-flight.
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, coro: Awaitable[None], name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.info("Background task %s cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task %s failed: %s",
                task.get_name(),
                exc,
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    async def drain(self) -> None:
        """Wait for every in-flight task. Used at shutdown and in tests."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
