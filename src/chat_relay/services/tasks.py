"""Ownership of detached asyncio tasks (relay sessions outliving their response body)."""
import asyncio
import structlog
from typing import Any, Coroutine, Optional, Set

logger = structlog.get_logger(__name__)


class TaskRegistry:
    """
    Keeps strong references to detached tasks and waits for them on shutdown.

    asyncio only keeps weak references to tasks, so a task nobody holds
    can be garbage collected mid-flight.
    """

    def __init__(self) -> None:
        self._tasks: Set["asyncio.Task[Any]"] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> "asyncio.Task[Any]":
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: "asyncio.Task[Any]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "task_registry.task_failed",
                task=task.get_name(),
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def wait_all(self, timeout: float) -> None:
        """Wait for in-flight tasks, cancelling whatever is left after ``timeout``."""
        if not self._tasks:
            return
        pending = set(self._tasks)
        logger.info("task_registry.draining", pending=len(pending))
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("task_registry.cancelled", count=len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)
