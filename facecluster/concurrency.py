"""Cooperative scheduling helpers: bounded pools, keyed locks and progress."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar

LOGGER = logging.getLogger("facecluster.concurrency")

T = TypeVar("T")
ProgressCallback = Callable[[int, int], None]


class WorkerPool:
    """Runs coroutines with at most ``size`` of them in flight."""

    def __init__(self, size: int) -> None:
        if size < 1:
            raise ValueError("Worker pool size must be at least 1")
        self.size = size
        self._semaphore = asyncio.Semaphore(size)

    async def submit(self, factory: Callable[[], Awaitable[T]]) -> T:
        async with self._semaphore:
            return await factory()

    async def map(
        self,
        func: Callable[[T], Awaitable],
        items: Iterable[T],
    ) -> List:
        """Apply ``func`` to every item and wait for all of them to drain."""
        tasks = [asyncio.ensure_future(self.submit(lambda item=item: func(item))) for item in items]
        if not tasks:
            return []
        try:
            return await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise


class KeyedLock:
    """One asyncio lock per key so writes to the same record never interleave."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class ProgressCounter:
    """``done/total`` counter readable at any time, with an optional callback."""

    def __init__(self, total: int = 0, callback: Optional[ProgressCallback] = None) -> None:
        self.total = total
        self.done = 0
        self.callback = callback

    def reset(self, total: int) -> None:
        self.total = total
        self.done = 0
        self._notify()

    def advance(self, step: int = 1) -> None:
        self.done += step
        self._notify()

    def _notify(self) -> None:
        if self.callback is None:
            return
        try:
            self.callback(self.done, self.total)
        except Exception:  # pragma: no cover - reporter bugs must not break a pass
            LOGGER.exception("Progress callback failed")

    @property
    def fraction(self) -> float:
        return self.done / self.total if self.total else 0.0
