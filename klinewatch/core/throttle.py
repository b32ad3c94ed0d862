import asyncio
import time
from typing import Optional

from klinewatch.core.logger import logger


class Throttle:
    """
    Shared outbound rate gate for polling feeds.

    acquire() suspends until at least 1/max_rate seconds have passed since
    the previous permit was granted, across every caller sharing the gate.
    A rate of None or <= 0 disables the gate.
    """

    def __init__(self, max_rate: Optional[float] = 10.0):
        self.max_rate = max_rate
        self.min_interval = 1.0 / max_rate if max_rate and max_rate > 0 else 0.0
        self.granted = 0
        self._last_permit: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def inert(self) -> bool:
        return self.min_interval == 0.0

    async def acquire(self):
        if self.inert:
            self.granted += 1
            return

        async with self._lock:
            if self._last_permit is not None:
                wait = self._last_permit + self.min_interval - time.monotonic()
                if wait > 0:
                    logger.debug(f"Throttle: waiting {wait:.3f}s for permit")
                    await asyncio.sleep(wait)
            self._last_permit = time.monotonic()
            self.granted += 1
