import asyncio
import pytest
from klinewatch.connectors.transport import Transport
from klinewatch.core.errors import TransportError
from klinewatch.core.models import StreamKey

BASE_MS = 1704067200000  # 2024-01-01 00:00 UTC


def kline_payload(symbol="BTCUSDT", interval="1m", close="100.0", t=BASE_MS, **overrides):
    k = {
        "t": t, "T": t + 59999, "s": symbol, "i": interval,
        "o": "100.0", "h": "110.0", "l": "90.0", "c": close, "v": "12.5",
        "x": False,
    }
    k.update(overrides)
    return {"e": "kline", "E": t + 1000, "s": symbol, "k": k}


class ScriptedTransport(Transport):
    """Plays back a script of payloads/exceptions, then idles like a quiet socket."""

    def __init__(self, key, reads=(), fail_opens=0, polling=False, close_delay=0.0):
        super().__init__(key)
        self.reads = list(reads)
        self.fail_opens = fail_opens
        self.polling = polling
        self.close_delay = close_delay
        self.opens = 0
        self.closed = False

    async def open(self):
        self.opens += 1
        if self.fail_opens > 0:
            self.fail_opens -= 1
            raise TransportError("connection refused")

    async def read(self):
        if self.reads:
            item = self.reads.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        await asyncio.Event().wait()

    async def close(self):
        if self.close_delay:
            await asyncio.sleep(self.close_delay)
        self.closed = True


@pytest.fixture
def btc_key():
    return StreamKey(symbol="BTCUSDT", interval="1m")


@pytest.fixture
def eth_key():
    return StreamKey(symbol="ETHUSDT", interval="1m")


@pytest.fixture
def payload():
    return kline_payload


@pytest.fixture
def scripted():
    return ScriptedTransport


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def until():
    return wait_until
