import logging
import math
import time
from typing import NamedTuple

from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter

from screenshotter.config import settings

logger = logging.getLogger(__name__)


class Admission(NamedTuple):
    allowed: bool
    retry_after: int


class RateLimiter:
    """Fixed-window admission per client identifier.

    Every call counts against the window, denied ones included. Windows reset
    lazily on the first call after expiry, and the in-memory storage evicts
    expired windows from a background timer, so memory tracks active clients.
    """

    def __init__(self, limit: str = settings.rate_limit) -> None:
        self._item = parse(limit)
        self._storage = MemoryStorage()
        self._limiter = FixedWindowRateLimiter(self._storage)

    @property
    def limit(self) -> int:
        return self._item.amount

    def admit(self, client_id: str) -> Admission:
        if self._limiter.hit(self._item, client_id):
            return Admission(True, 0)

        reset_time, _remaining = self._limiter.get_window_stats(self._item, client_id)
        retry_after = max(1, math.ceil(reset_time - time.time()))
        logger.info("Rate limit exceeded for %s (retry after %ds)", client_id, retry_after)
        return Admission(False, retry_after)

    def reset(self) -> None:
        self._storage.reset()
