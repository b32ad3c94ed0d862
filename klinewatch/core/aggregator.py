import asyncio
import time
from typing import Callable, Dict, Optional

from klinewatch.core.logger import logger
from klinewatch.core.models import Candle, CacheEntry, ChangeEvent, GlobalStats, StreamKey
from klinewatch.core.reporter import StatsReporter

# Pushed onto the channel by the controller once every feed has exited
CLOSE = None


class Aggregator:
    """
    Sole consumer of the candle channel and sole owner of the cache.

    All writes to the per-stream cache and the global counters happen in
    process(), which only ever runs on this consumer, so no lock is needed.
    Readers get copies through snapshot() and summary().
    """

    def __init__(self, queue: asyncio.Queue, reporter: Optional[StatsReporter] = None,
                 report_every: int = 100, clock: Callable[[], float] = time.monotonic):
        self.queue = queue
        self.reporter = reporter or StatsReporter()
        self.report_every = report_every
        self.clock = clock
        self.cache: Dict[StreamKey, CacheEntry] = {}
        self.stats = GlobalStats(window_start=clock())
        self.errors = 0

    async def run(self):
        """Consume until the channel is closed"""
        logger.info("Aggregator started")
        while True:
            candle = await self.queue.get()
            try:
                if candle is CLOSE:
                    break
                self.process(candle)
            except Exception as e:
                self.errors += 1
                logger.error(f"Failed to process candle: {e}", exc_info=True)
            finally:
                self.queue.task_done()
        logger.info("Aggregator drained", extra={
            "total_requests": self.stats.total_requests,
            "total_updates": self.stats.total_updates,
        })

    def process(self, candle: Candle) -> Optional[ChangeEvent]:
        key = candle.stream_key
        self.stats.total_requests += 1

        try:
            entry = self.cache.get(key)
            if entry is None:
                entry = self.cache[key] = CacheEntry()

            event = None
            if entry.last_displayed is None or entry.last_displayed.change_signature() != candle.change_signature():
                event = self._apply_change(entry, candle)
                self.reporter.report_change(event)
                self.reporter.report_average(self.average_percent_change())
            return event
        finally:
            if self.stats.total_requests % self.report_every == 0:
                self.reporter.report_rate(self.request_rate())

    def _apply_change(self, entry: CacheEntry, candle: Candle) -> ChangeEvent:
        price_delta = percent_change = None
        if entry.previous_close is not None:
            price_delta = candle.close - entry.previous_close
            if entry.previous_close != 0:
                percent_change = price_delta / entry.previous_close * 100

        entry.previous_close = candle.close
        entry.last_displayed = candle
        entry.last_price_delta = price_delta
        entry.last_percent_change = percent_change
        entry.update_count += 1
        self.stats.total_updates += 1

        return ChangeEvent(
            stream_key=candle.stream_key,
            candle=candle,
            price_delta=price_delta,
            percent_change=percent_change,
            update_count=entry.update_count,
        )

    def elapsed(self) -> float:
        return self.clock() - self.stats.window_start

    def request_rate(self) -> float:
        elapsed = self.elapsed()
        if elapsed <= 0:
            return 0.0
        return self.stats.total_requests / elapsed

    def average_percent_change(self) -> Optional[float]:
        """Mean of the latest percent change per stream; None when no stream has one yet."""
        changes = [e.last_percent_change for e in self.cache.values() if e.last_percent_change is not None]
        if not changes:
            return None
        return sum(changes) / len(changes)

    def snapshot(self) -> Dict[StreamKey, CacheEntry]:
        return {key: entry.model_copy(deep=True) for key, entry in self.cache.items()}

    def summary(self) -> dict:
        return {
            "total_requests": self.stats.total_requests,
            "total_updates": self.stats.total_updates,
            "request_rate": self.request_rate(),
            "average_percent_change": self.average_percent_change(),
            "elapsed_seconds": self.elapsed(),
            "started_at": self.stats.started_at.isoformat(),
            "errors": self.errors,
            "updates": {str(key): entry.update_count for key, entry in self.cache.items()},
        }
