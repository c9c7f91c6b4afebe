"""Registry of background scan tasks, keyed by job id.

Handles live only in this process. A restart orphans any job still marked
running in the store; ``find_running_job(stale_after=...)`` is the recovery
path for that.
"""

import asyncio
import atexit
import logging
from typing import Awaitable, Dict, List, Optional

logger = logging.getLogger(__name__)


class TaskRegistry:
    """Owns the asyncio tasks that run scans in the background."""

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}

    def spawn(self, job_id: str, coro: Awaitable) -> asyncio.Task:
        """Schedule a coroutine for job_id and return its task handle.

        Must be called from inside a running event loop.
        """
        if job_id in self._tasks and not self._tasks[job_id].done():
            raise RuntimeError(f"Task for job {job_id} is already running")

        task = asyncio.ensure_future(coro)
        self._tasks[job_id] = task
        task.add_done_callback(lambda t, jid=job_id: self._on_done(jid, t))
        logger.debug(f"Spawned task for job {job_id}")
        return task

    def _on_done(self, job_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]

        if task.cancelled():
            logger.info(f"Task for job {job_id} was cancelled")
        elif task.exception() is not None:
            logger.error(f"Task for job {job_id} crashed", exc_info=task.exception())

    def get(self, job_id: str) -> Optional[asyncio.Task]:
        return self._tasks.get(job_id)

    def running_ids(self) -> List[str]:
        return [job_id for job_id, task in self._tasks.items() if not task.done()]

    async def wait(self, job_id: str) -> None:
        """Wait for a job's task to finish; returns at once if none is tracked."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait([task])

    async def shutdown(self) -> None:
        """Cancel and await every tracked task."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def clear(self) -> None:
        """Drop all handles without awaiting them (interpreter teardown)."""
        self._tasks.clear()


_registry: Optional[TaskRegistry] = None


def get_registry() -> TaskRegistry:
    """Return the process-wide registry, creating it on first use."""
    global _registry
    if _registry is None:
        _registry = TaskRegistry()
        atexit.register(_registry.clear)
    return _registry
