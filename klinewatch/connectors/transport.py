from abc import ABC, abstractmethod
from typing import Any, Optional

from klinewatch.core.models import StreamKey


class Transport(ABC):
    """
    Delivers raw kline payloads for a single stream.

    Implementations raise TransportError for anything that should send the
    owning feed into backoff. read() may return None for frames that carry
    no kline (pings, acks).
    """
    # Polling transports issue one request per read and share a Throttle
    polling: bool = False

    def __init__(self, key: StreamKey):
        self.key = key

    @abstractmethod
    async def open(self):
        pass

    @abstractmethod
    async def read(self) -> Optional[Any]:
        pass

    @abstractmethod
    async def close(self):
        pass
