"""In-process locks serializing access to the shared git repository."""

import asyncio
from typing import Awaitable, Callable


class RepoLock:
    """
    Shared/exclusive lock over the main repository.

    Worktree operations for distinct agents hold the shared side and may
    overlap. Operations that move the main checkout's HEAD (merges) hold the
    exclusive side. Waiting writers block new readers so a merge is not
    starved by a steady stream of worktree operations.
    """

    def __init__(self):
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @property
    def readers(self) -> int:
        return self._readers

    @property
    def is_exclusive(self) -> bool:
        return self._writer

    async def acquire_shared(self) -> None:
        async with self._cond:
            await self._cond.wait_for(
                lambda: not self._writer and self._writers_waiting == 0
            )
            self._readers += 1

    async def release_shared(self) -> None:
        async with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    async def acquire_exclusive(self) -> None:
        async with self._cond:
            self._writers_waiting += 1
            try:
                await self._cond.wait_for(
                    lambda: not self._writer and self._readers == 0
                )
            finally:
                self._writers_waiting -= 1
                # readers parked behind a cancelled writer must re-check
                self._cond.notify_all()
            self._writer = True

    async def release_exclusive(self) -> None:
        async with self._cond:
            self._writer = False
            self._cond.notify_all()

    def shared(self) -> "LockContext":
        """Context manager holding the shared side."""
        return LockContext(self.acquire_shared, self.release_shared)

    def exclusive(self) -> "LockContext":
        """Context manager holding the exclusive side."""
        return LockContext(self.acquire_exclusive, self.release_exclusive)


class KeyedLock:
    """One asyncio.Lock per key (agent id, branch name, ...)."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def __call__(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def discard(self, key: str) -> None:
        """Forget the lock for ``key`` unless someone is holding it."""
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class LockContext:
    """Async context manager pairing an acquire and a release coroutine."""

    def __init__(
        self,
        acquire: Callable[[], Awaitable[None]],
        release: Callable[[], Awaitable[None]]
    ):
        """
        Initialize lock context.

        Args:
            acquire: Coroutine function acquiring the lock
            release: Coroutine function releasing it
        """
        self._acquire = acquire
        self._release = release

    async def __aenter__(self) -> None:
        """Acquire lock on entry."""
        await self._acquire()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Release lock on exit."""
        await self._release()
