import asyncio
from typing import Optional
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException
from klinewatch.core.logger import logger
from klinewatch.core.errors import TransportError
from klinewatch.core.models import StreamKey
from klinewatch.connectors.transport import Transport
from klinewatch.config import settings

class BinanceKlineSocket(Transport):
    """Push transport: one Binance kline stream per socket"""

    def __init__(self, key: StreamKey, base_url: Optional[str] = None, read_timeout: Optional[float] = None):
        super().__init__(key)
        self.base_url = (base_url or settings.WS_BASE_URL).rstrip("/")
        self.read_timeout = read_timeout if read_timeout is not None else settings.READ_TIMEOUT
        self._ws = None

    @property
    def ws_url(self) -> str:
        return f"{self.base_url}/{self.key.symbol.lower()}@kline_{self.key.interval}"

    async def open(self):
        """Open the socket for this stream"""
        logger.info(f"Connecting to Binance WebSocket for {self.key}...")
        try:
            self._ws = await websockets.connect(self.ws_url)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise TransportError(f"{self.key}: connect failed: {e}") from e
        logger.info(f"Connected to WebSocket for {self.key}.")

    async def read(self):
        """Wait for the next frame. Silence past read_timeout counts as a dead socket."""
        if self._ws is None:
            raise TransportError(f"{self.key}: socket not open")
        try:
            return await asyncio.wait_for(self._ws.recv(), timeout=self.read_timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"Binance WS heartbeat timeout for {self.key}")
            await self.close()
            raise TransportError(f"{self.key}: no data for {self.read_timeout}s") from e
        except ConnectionClosed as e:
            logger.warning(f"WebSocket connection closed for {self.key}")
            self._ws = None
            raise TransportError(f"{self.key}: connection closed: {e}") from e
        except (OSError, WebSocketException) as e:
            await self.close()
            raise TransportError(f"{self.key}: read failed: {e}") from e

    async def close(self):
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except (OSError, WebSocketException) as e:
            logger.debug(f"Ignoring error closing socket for {self.key}: {e}")
