"""Tracking of detached background jobs."""

import asyncio
from collections.abc import Coroutine
from typing import Any

import structlog

logger = structlog.get_logger()


class BackgroundTaskTracker:
    """Run coroutines detached from the caller while keeping their handles.

    Submitting code never awaits the returned task. The tracker keeps a
    reference until the task finishes so it is not garbage collected, logs
    tasks that crash, and lets the application drain or cancel whatever is
    still running.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()
        self.stop_event = asyncio.Event()

    def __len__(self) -> int:
        return len(self._tasks)

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        """Schedule ``coro`` on the running loop and track it."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        logger.debug("background_task_started", task=name, in_flight=len(self._tasks))
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.info("background_task_cancelled", task=task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "background_task_crashed",
                task=task.get_name(),
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=exc,
            )

    async def join(self) -> None:
        """Wait until every tracked task, including ones spawned meanwhile, is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Signal pollers to stop, then cancel tasks that outlive ``timeout``."""
        self.stop_event.set()
        if not self._tasks:
            return

        pending = list(self._tasks)
        logger.info("background_tasks_draining", count=len(pending))
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
