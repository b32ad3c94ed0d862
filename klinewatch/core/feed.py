import asyncio
from enum import Enum
from typing import List, Optional

from klinewatch.core.logger import logger
from klinewatch.core.errors import MalformedPayload, TransportError
from klinewatch.core.models import StreamKey
from klinewatch.core.parser import parse_kline
from klinewatch.core.backoff import ExponentialBackoff
from klinewatch.core.throttle import Throttle
from klinewatch.connectors.transport import Transport


class FeedState(str, Enum):
    CONNECTING = "connecting"
    STREAMING = "streaming"
    ERROR = "error"
    BACKOFF = "backoff"
    CLOSING = "closing"
    CLOSED = "closed"


class _Closing(Exception):
    """Raised out of a suspension point once cancellation is signalled"""


class FeedConnection:
    """
    Keeps one stream alive and forwards its candles to the shared channel.

    States: CONNECTING -> STREAMING -> (ERROR -> BACKOFF -> CONNECTING)
    -> CLOSING -> CLOSED. Every wait is raced against stop_event, so the
    feed exits promptly once cancellation is raised.
    """

    def __init__(self, key: StreamKey, transport: Transport, queue: asyncio.Queue,
                 stop_event: asyncio.Event, throttle: Optional[Throttle] = None,
                 backoff: Optional[ExponentialBackoff] = None, startup_attempts: int = 3):
        self.key = key
        self.transport = transport
        self.queue = queue
        self.stop_event = stop_event
        self.throttle = throttle
        self.backoff = backoff or ExponentialBackoff()
        self.startup_attempts = startup_attempts

        self.state = FeedState.CLOSED
        self.state_history: List[FeedState] = []
        self.failures = 0
        self.messages = 0
        self.dropped = 0
        self.established = False
        self._settled = asyncio.Event()

    def _set_state(self, state: FeedState):
        self.state = state
        self.state_history.append(state)
        logger.debug(f"Feed {self.key} -> {state.value}")

    def _settle(self):
        self._settled.set()

    async def wait_settled(self) -> bool:
        """True once streaming has started, False if startup kept failing."""
        await self._settled.wait()
        return self.established

    async def run(self):
        try:
            while not self.stop_event.is_set():
                self._set_state(FeedState.CONNECTING)
                try:
                    await self._interruptible(self.transport.open())
                    self._set_state(FeedState.STREAMING)
                    self.backoff.reset()
                    self.failures = 0
                    if not self.established:
                        self.established = True
                        self._settle()
                    await self._stream()
                except _Closing:
                    raise
                except TransportError as e:
                    await self._recover(e)
                except Exception as e:
                    logger.error(f"Feed {self.key} unexpected error: {e}", exc_info=True)
                    await self._recover(e)
        except _Closing:
            pass
        finally:
            self._set_state(FeedState.CLOSING)
            try:
                await self.transport.close()
            except TransportError as e:
                logger.warning(f"Feed {self.key} close error: {e}")
            self._settle()
            self._set_state(FeedState.CLOSED)
            logger.info(f"Feed {self.key} closed")

    async def _recover(self, e: Exception):
        self._set_state(FeedState.ERROR)
        self.failures += 1
        if not self.established and self.failures >= self.startup_attempts:
            if not self._settled.is_set():
                logger.error(f"Feed {self.key} failed to start after {self.failures} attempts: {e}")
            self._settle()

        delay = self.backoff.next_delay()
        logger.warning(f"Feed {self.key} connection lost: {e}. Reconnecting in {delay:.2f}s...")
        self._set_state(FeedState.BACKOFF)
        await self._interruptible(asyncio.sleep(delay))

    async def _stream(self):
        while True:
            if self.transport.polling and self.throttle is not None:
                await self._interruptible(self.throttle.acquire())

            raw = await self._interruptible(self.transport.read())
            if raw is None:
                continue
            self.messages += 1

            try:
                candle = parse_kline(raw, self.key)
            except MalformedPayload as e:
                self.dropped += 1
                logger.warning(f"Dropping malformed message on {self.key}: {e}")
                continue

            await self._interruptible(self.queue.put(candle))
            logger.debug(f"Sent kline data for {self.key}")

    async def _interruptible(self, aw):
        """Await aw unless stop_event fires first; then cancel it and raise _Closing."""
        task = asyncio.ensure_future(aw)
        stopper = asyncio.ensure_future(self.stop_event.wait())
        try:
            done, _ = await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
            if not task.done():
                task.cancel()
                await asyncio.wait({task})
        if task in done:
            return task.result()
        raise _Closing()
