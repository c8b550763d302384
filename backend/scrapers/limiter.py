"""
Concurrency limiter for browser pages.

Caps the number of simultaneous scrape sessions so one small container never
opens more tabs than it has memory for. Waiters are woken strictly FIFO.
"""

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from typing import Deque

logger = logging.getLogger(__name__)


class ConcurrencyLimiter:
    """
    Bounded FIFO slot pool for cooperative tasks.

    Usage:
        async with limiter.slot():
            ...  # at most `limit` tasks run this block at once
    """

    def __init__(self, limit: int = 3):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self._active = 0
        self._waiters: Deque[asyncio.Future] = deque()
        self.peak_active = 0

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self):
        """Wait until a slot is free, then take it."""
        if self._active < self.limit and not self._waiters:
            self._take()
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            # Slot was already handed to us; pass it on instead of leaking it
            if waiter.done() and not waiter.cancelled():
                self.release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def release(self):
        """Free a slot and hand it to the oldest live waiter."""
        if self._active <= 0:
            raise RuntimeError("release() called without a matching acquire()")
        self._active -= 1
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                self._take()
                waiter.set_result(None)
                break

    def _take(self):
        self._active += 1
        self.peak_active = max(self.peak_active, self._active)

    @asynccontextmanager
    async def slot(self):
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    def get_status(self) -> dict:
        return {
            'limit': self.limit,
            'active': self._active,
            'waiting': self.waiting,
            'peak_active': self.peak_active,
        }
