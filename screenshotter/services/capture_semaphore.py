import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

from screenshotter.errors import QueueTimeout

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class _Waiter:
    future: asyncio.Future
    timer: Optional[asyncio.TimerHandle] = field(default=None)


class CaptureSemaphore:
    """Bounded concurrency gate with a FIFO queue and per-waiter deadlines.

    A released slot is handed straight to the oldest waiter, so ``current``
    stays constant across a release followed by an immediate grant and never
    exceeds ``max``.
    """

    def __init__(self, max_concurrent: int) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max = max_concurrent
        self.current = 0
        self._waiters: deque[_Waiter] = deque()

    @property
    def waiting(self) -> int:
        return len(self._waiters)

    async def acquire(self, timeout: float) -> None:
        """Wait up to ``timeout`` seconds for a slot, else raise QueueTimeout."""
        if self.current < self.max:
            self.current += 1
            return

        loop = asyncio.get_running_loop()
        waiter = _Waiter(future=loop.create_future())
        waiter.timer = loop.call_later(timeout, self._expire, waiter)
        self._waiters.append(waiter)

        try:
            await waiter.future
        except asyncio.CancelledError:
            waiter.timer.cancel()
            if waiter.future.done() and not waiter.future.cancelled() and waiter.future.exception() is None:
                # granted and cancelled in the same tick: pass the slot on
                self.release()
            elif waiter in self._waiters:
                self._waiters.remove(waiter)
            raise

    def _expire(self, waiter: _Waiter) -> None:
        if waiter.future.done():
            return
        self._waiters.remove(waiter)
        logger.warning("Capture queue timeout (%d active, %d waiting)", self.current, len(self._waiters))
        waiter.future.set_exception(QueueTimeout())

    def release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if waiter.timer is not None:
                waiter.timer.cancel()
            if waiter.future.done():
                continue
            waiter.future.set_result(None)
            return
        self.current = max(0, self.current - 1)

    @asynccontextmanager
    async def slot(self, timeout: float) -> AsyncIterator[None]:
        await self.acquire(timeout)
        try:
            yield
        finally:
            self.release()
