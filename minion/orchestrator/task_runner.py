"""Supervised pool for background task execution."""

import asyncio
import logging
from typing import Callable, Coroutine, Optional

logger = logging.getLogger(__name__)

DoneCallback = Callable[[str, asyncio.Task], None]


class TaskRunner:
    """
    Runs task coroutines in the background and keeps track of them.

    Every submitted coroutine is wrapped in an ``asyncio.Task`` keyed by the
    task id. At most ``max_concurrent`` of them hold an execution slot at once;
    the rest wait for one inside ``slot()``. When a coroutine finishes for any
    reason (result, exception or cancellation) the ``on_done`` callback given
    at submission is invoked, so no outcome goes unobserved.
    """

    def __init__(self, max_concurrent: int = 5):
        """
        Initialize task runner.

        Args:
            max_concurrent: Number of tasks allowed to execute at once
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._slots = asyncio.Semaphore(max_concurrent)
        self._active: dict[str, asyncio.Task] = {}

    def slot(self) -> asyncio.Semaphore:
        """Async context manager holding one execution slot."""
        return self._slots

    def submit(
        self,
        key: str,
        coro: Coroutine,
        on_done: Optional[DoneCallback] = None
    ) -> asyncio.Task:
        """
        Start ``coro`` in the background without waiting for it.

        Args:
            key: Unique key (task id)
            coro: Coroutine to run
            on_done: Called with (key, asyncio.Task) once the coroutine ends

        Returns:
            The asyncio.Task wrapping ``coro``

        Raises:
            RuntimeError: If ``key`` is already active
        """
        if self.is_active(key):
            coro.close()
            raise RuntimeError(f"Task {key} is already running")

        future = asyncio.create_task(coro, name=f"minion-task-{key}")
        self._active[key] = future
        future.add_done_callback(lambda f: self._finished(key, f, on_done))
        return future

    def _finished(
        self,
        key: str,
        future: asyncio.Task,
        on_done: Optional[DoneCallback]
    ) -> None:
        if self._active.get(key) is future:
            del self._active[key]

        if not future.cancelled() and future.exception() is not None:
            logger.error(
                f"Background task {key} failed",
                exc_info=future.exception()
            )

        if on_done is not None:
            try:
                on_done(key, future)
            except Exception:
                logger.exception(f"Completion callback for task {key} failed")

    def is_active(self, key: str) -> bool:
        future = self._active.get(key)
        return future is not None and not future.done()

    @property
    def active_count(self) -> int:
        return sum(1 for f in self._active.values() if not f.done())

    async def cancel(self, key: str, timeout: Optional[float] = None) -> bool:
        """
        Cancel a background task and wait for it to unwind.

        Args:
            key: Task key
            timeout: Seconds to wait for the task to finish unwinding

        Returns:
            True if the task is no longer running (or was never active)
        """
        future = self._active.get(key)
        if future is None or future.done():
            return True

        future.cancel()
        done, _ = await asyncio.wait({future}, timeout=timeout)
        if not done:
            logger.warning(f"Task {key} did not finish within {timeout}s of cancellation")
        return bool(done)

    async def join(self, timeout: Optional[float] = None) -> None:
        """Wait until every active task has finished."""
        futures = [f for f in self._active.values() if not f.done()]
        if futures:
            await asyncio.wait(futures, timeout=timeout)

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Cancel every active task and wait for them to unwind."""
        futures = [f for f in self._active.values() if not f.done()]
        for future in futures:
            future.cancel()
        if futures:
            logger.info(f"Cancelling {len(futures)} running tasks")
            await asyncio.wait(futures, timeout=timeout)
