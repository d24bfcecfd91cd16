"""FIFO admission gate bounding concurrent work."""

from __future__ import annotations

import asyncio
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator


class Governor:
    """Counting semaphore with strict first-come-first-served hand-off.

    A released slot is transferred directly to the oldest waiter, so a task
    that releases and immediately re-acquires cannot overtake callers already
    queued. ``peak`` records the highest number of slots ever held at once.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._in_flight = 0
        self._peak = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def peak(self) -> int:
        return self._peak

    @property
    def waiting(self) -> int:
        return sum(1 for fut in self._waiters if not fut.done())

    def _grant(self) -> None:
        self._in_flight += 1
        self._peak = max(self._peak, self._in_flight)

    async def acquire(self) -> None:
        if self._in_flight < self.capacity and not self._waiters:
            self._grant()
            return
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # slot was handed over just before cancellation; pass it on
                self.release()
            else:
                try:
                    self._waiters.remove(fut)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        if self._in_flight <= 0:
            raise RuntimeError("Governor released more times than acquired")
        self._in_flight -= 1
        while self._waiters:
            fut = self._waiters.popleft()
            if fut.done():
                continue
            self._grant()
            fut.set_result(None)
            break

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()
