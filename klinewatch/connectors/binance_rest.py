import time
from typing import Dict, Any, Optional, List
import httpx
from klinewatch.config import settings
from klinewatch.core.logger import logger
from klinewatch.core.errors import TransportError
from klinewatch.core.models import StreamKey
from klinewatch.connectors.transport import Transport

class BinanceREST:
    """Public Binance spot market-data endpoints (no signing needed)"""

    def __init__(self, base_url: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url or settings.REST_BASE_URL
        self.client = client or httpx.AsyncClient(base_url=self.base_url, timeout=10.0)

    async def _request(self, endpoint: str, params: Optional[Dict[str, Any]] = None):
        try:
            response = await self.client.get(endpoint, params=params or {})

            if response.status_code >= 400:
                logger.error(f"Binance API Error {response.status_code}: {response.text}")

            response.raise_for_status()
            return response.json()

        except httpx.HTTPError as e:
            raise TransportError(f"GET {endpoint} failed: {e}") from e
        except ValueError as e:
            raise TransportError(f"GET {endpoint} returned invalid JSON: {e}") from e

    async def ping(self):
        """Connectivity check"""
        return await self._request("/api/v3/ping")

    async def get_klines(self, symbol: str, interval: str, limit: int = 1) -> List[list]:
        """Most recent klines, oldest first"""
        params = {"symbol": symbol, "interval": interval, "limit": limit}
        return await self._request("/api/v3/klines", params)

    async def close(self):
        await self.client.aclose()


def kline_row_to_payload(row: list, now_ms: Optional[int] = None) -> Dict[str, Any]:
    """
    Convert a REST kline row into the stream's kline object so both
    transports feed the same parser.
    Row layout: [open_time, open, high, low, close, volume, close_time, ...]
    """
    if not isinstance(row, list) or len(row) < 7:
        # Let the parser report it
        return {"raw": row}
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return {
        "t": row[0], "o": row[1], "h": row[2], "l": row[3],
        "c": row[4], "v": row[5], "T": row[6],
        "x": isinstance(row[6], int) and row[6] < now_ms,
    }


class BinanceKlinePoller(Transport):
    """Polling transport: one GET /api/v3/klines per read"""
    polling = True

    def __init__(self, key: StreamKey, rest: BinanceREST):
        super().__init__(key)
        self.rest = rest

    async def open(self):
        await self.rest.ping()
        logger.info(f"Polling Binance REST for {self.key}")

    async def read(self):
        rows = await self.rest.get_klines(self.key.symbol, self.key.interval, limit=1)
        if not rows:
            return None
        if not isinstance(rows, list):
            return rows
        return kline_row_to_payload(rows[-1])

    async def close(self):
        # The HTTP client is shared by every poller; the application closes it
        pass
