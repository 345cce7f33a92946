"""
Tracked background tasks.

Fire-and-forget work (processing kicked off by the API or the inbox poller)
runs as asyncio tasks held here, so they are not garbage collected
mid-flight, failures are logged, and shutdown can wait for them.
"""

import asyncio
from collections.abc import Coroutine
from typing import Any

from stina.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class BackgroundTaskTracker:
    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    def spawn(self, name: str, coroutine: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(self._run(name, coroutine), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, name: str, coroutine: Coroutine[Any, Any, Any]) -> None:
        try:
            await coroutine
            logger.debug("Background task finished", task=name)
        except asyncio.CancelledError:
            logger.warning("Background task cancelled", task=name)
            raise
        except Exception as e:
            logger.error(
                "Background task failed",
                task=name,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def wait_all(self, timeout: float | None = None) -> None:
        """Wait for in-flight tasks; whatever is still running after `timeout` is cancelled."""
        if not self._tasks:
            return
        _, still_running = await asyncio.wait(list(self._tasks), timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning("Cancelled unfinished background tasks", count=len(still_running))
