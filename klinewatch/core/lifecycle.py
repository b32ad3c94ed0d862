import asyncio
from typing import Callable, Dict, Iterable, List, Optional

from klinewatch.core.logger import logger
from klinewatch.core.errors import FatalStartup, ShutdownTimeout
from klinewatch.core.models import StreamKey
from klinewatch.core.aggregator import Aggregator, CLOSE
from klinewatch.core.backoff import ExponentialBackoff
from klinewatch.core.feed import FeedConnection
from klinewatch.core.reporter import StatsReporter
from klinewatch.core.throttle import Throttle
from klinewatch.connectors.transport import Transport


class LifecycleController:
    """
    Owns the feeds, the aggregator and the cancellation signal.

    start() launches one task per stream plus the aggregator.
    wait_for_exit() returns an exit code once the operator asks to stop (0)
    or every feed has failed to start (1). shutdown() cancels the feeds,
    closes the channel, lets the aggregator drain and reports a summary.
    """

    def __init__(self, keys: Iterable[StreamKey], transport_factory: Callable[[StreamKey], Transport],
                 reporter: Optional[StatsReporter] = None, throttle: Optional[Throttle] = None,
                 report_every: int = 100, channel_size: int = 100, shutdown_timeout: float = 5.0,
                 backoff_initial: float = 1.0, backoff_max: float = 30.0, startup_attempts: int = 3):
        self.keys: List[StreamKey] = list(dict.fromkeys(keys))
        self.reporter = reporter or StatsReporter()
        self.shutdown_timeout = shutdown_timeout

        self.queue: asyncio.Queue = asyncio.Queue(maxsize=channel_size)
        self.stop_event = asyncio.Event()
        self._interrupt = asyncio.Event()

        self.aggregator = Aggregator(self.queue, reporter=self.reporter, report_every=report_every)
        self.feeds: Dict[StreamKey, FeedConnection] = {
            key: FeedConnection(
                key,
                transport_factory(key),
                self.queue,
                self.stop_event,
                throttle=throttle,
                backoff=ExponentialBackoff(initial=backoff_initial, max_delay=backoff_max),
                startup_attempts=startup_attempts,
            )
            for key in self.keys
        }

        self._feed_tasks: Dict[StreamKey, asyncio.Task] = {}
        self._aggregator_task: Optional[asyncio.Task] = None
        self._shutdown_done = False

    def start(self):
        if self._aggregator_task is not None:
            return
        logger.info(f"Starting {len(self.feeds)} feeds", extra={"streams": [str(k) for k in self.keys]})
        self._aggregator_task = asyncio.create_task(self.aggregator.run(), name="aggregator")
        for key, feed in self.feeds.items():
            self._feed_tasks[key] = asyncio.create_task(feed.run(), name=f"feed:{key}")

    def request_stop(self):
        """Operator interrupt"""
        self._interrupt.set()

    def feed_states(self) -> Dict[str, str]:
        return {str(key): feed.state.value for key, feed in self.feeds.items()}

    async def wait_for_exit(self) -> int:
        try:
            await self._wait_startup()
        except FatalStartup as e:
            logger.critical(f"Fatal startup error: {e}")
            return 1
        await self._interrupt.wait()
        logger.info("Shutdown signal received")
        return 0

    async def _wait_startup(self):
        settled = asyncio.ensure_future(
            asyncio.gather(*(feed.wait_settled() for feed in self.feeds.values()))
        )
        interrupted = asyncio.ensure_future(self._interrupt.wait())
        try:
            await asyncio.wait({settled, interrupted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            interrupted.cancel()
            if not settled.done():
                settled.cancel()

        if settled.done() and not settled.cancelled():
            results = settled.result()
            if not any(results):
                raise FatalStartup(f"no feed could be established for {len(results)} streams")
            failed = [str(k) for k, ok in zip(self.feeds, results) if not ok]
            if failed:
                logger.warning(f"Feeds still retrying after startup failures: {failed}")

    async def shutdown(self) -> dict:
        if self._shutdown_done:
            return self.aggregator.summary()
        self._shutdown_done = True

        logger.info("Shutdown Initiated...")
        self.stop_event.set()

        tasks = list(self._feed_tasks.values())
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self.shutdown_timeout)
            for key, task in self._feed_tasks.items():
                if task in pending:
                    err = ShutdownTimeout(f"feed {key} did not close within {self.shutdown_timeout}s")
                    logger.error(str(err))
                    task.cancel()
                elif not task.cancelled() and task.exception() is not None:
                    logger.error(f"Feed {key} exited with error: {task.exception()!r}")
            if pending:
                await asyncio.wait(pending)

        if self._aggregator_task is not None:
            try:
                await asyncio.wait_for(self._drain(), timeout=self.shutdown_timeout)
            except asyncio.TimeoutError:
                logger.error("Aggregator did not drain in time")

        summary = self.aggregator.summary()
        self.reporter.report_summary(summary)
        logger.info("Shutdown Complete")
        return summary

    async def _drain(self):
        await self.queue.put(CLOSE)
        await self._aggregator_task

    async def run(self) -> int:
        self.start()
        try:
            return await self.wait_for_exit()
        finally:
            await self.shutdown()
