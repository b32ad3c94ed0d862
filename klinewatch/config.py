import json
from typing import Annotated, List
from pydantic_settings import BaseSettings, SettingsConfigDict, NoDecode
from pydantic import Field, field_validator

# Binance kline interval codes
VALID_INTERVALS = (
    "1s", "1m", "3m", "5m", "15m", "30m",
    "1h", "2h", "4h", "6h", "8h", "12h",
    "1d", "3d", "1w", "1M",
)

LOG_LEVELS = {
    "error": "ERROR",
    "warn": "WARNING",
    "warning": "WARNING",
    "info": "INFO",
    "debug": "DEBUG",
    "critical": "CRITICAL",
}


def _split(v):
    if isinstance(v, str):
        v = v.strip()
        if v.startswith("["):
            return json.loads(v)
        # Handle comma-separated string: "BTCUSDT,ETHUSDT"
        return [x.strip() for x in v.split(",") if x.strip()]
    return v


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    APP_NAME: str = "klinewatch"
    APP_VERSION: str = "0.1.0"
    LOG_LEVEL: str = Field(default="INFO", description="Verbosity: error, warn, info, debug")

    # Market Data
    SYMBOLS: Annotated[List[str], NoDecode] = Field(default=[
        "BTCUSDT", "ETHUSDT", "BNBUSDT", "ADAUSDT", "DOGEUSDT"
    ], description="Symbols to subscribe to")
    INTERVALS: Annotated[List[str], NoDecode] = Field(default=["1m", "5m", "15m"], description="Kline intervals")
    TRANSPORT: str = Field(default="websocket", description="Feed transport: websocket (push) or rest (polling)")

    # Binance endpoints
    WS_BASE_URL: str = "wss://stream.binance.com:9443/ws"
    REST_BASE_URL: str = "https://api.binance.com"

    # Feed tuning
    MAX_REQUEST_RATE: float = Field(default=10.0, description="Requests/second across all polling feeds")
    READ_TIMEOUT: float = Field(default=60.0, description="Silence before a socket counts as dead")
    BACKOFF_INITIAL: float = 1.0
    BACKOFF_MAX: float = 30.0
    STARTUP_ATTEMPTS: int = Field(default=3, ge=1)
    SHUTDOWN_TIMEOUT: float = 5.0
    CHANNEL_SIZE: int = Field(default=100, ge=1)

    # Reporting
    REPORT_EVERY_N_REQUESTS: int = Field(default=100, ge=1)
    HEARTBEAT_INTERVAL: float = 60.0

    @field_validator("SYMBOLS", mode="before")
    @classmethod
    def parse_symbols(cls, v):
        symbols = []
        for sym in _split(v):
            sym = str(sym).strip().upper()
            if sym and sym not in symbols:
                symbols.append(sym)
        if not symbols:
            raise ValueError("at least one symbol is required")
        return symbols

    @field_validator("INTERVALS", mode="before")
    @classmethod
    def parse_intervals(cls, v):
        intervals = []
        for interval in _split(v):
            interval = str(interval).strip()
            if interval not in VALID_INTERVALS:
                raise ValueError(f"unknown interval {interval!r}")
            if interval not in intervals:
                intervals.append(interval)
        if not intervals:
            raise ValueError("at least one interval is required")
        return intervals

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def parse_log_level(cls, v):
        level = LOG_LEVELS.get(str(v).strip().lower())
        if level is None:
            raise ValueError(f"unknown log level {v!r}")
        return level

    @field_validator("TRANSPORT", mode="before")
    @classmethod
    def parse_transport(cls, v):
        transport = str(v).strip().lower()
        if transport not in ("websocket", "rest"):
            raise ValueError(f"unknown transport {v!r}")
        return transport

settings = Settings()
