from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime
from typing import Optional

class StreamKey(BaseModel):
    """Identifies one feed and one cache slot"""
    model_config = ConfigDict(frozen=True)

    symbol: str
    interval: str

    @field_validator("symbol")
    @classmethod
    def normalise_symbol(cls, v: str) -> str:
        return v.strip().upper()

    def __str__(self):
        return f"{self.symbol}@{self.interval}"

class Candle(BaseModel):
    """Represents a normalized kline update"""
    model_config = ConfigDict(frozen=True)

    stream_key: StreamKey
    interval_start_time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float
    is_final: bool = False

    def change_signature(self) -> tuple:
        """Fields that decide whether an update is worth reporting"""
        return (self.open, self.high, self.low, self.close, self.volume, self.interval_start_time)

class CacheEntry(BaseModel):
    last_displayed: Optional[Candle] = None
    previous_close: Optional[float] = None
    update_count: int = 0
    last_price_delta: Optional[float] = None
    last_percent_change: Optional[float] = None

class GlobalStats(BaseModel):
    total_requests: int = 0
    total_updates: int = 0
    window_start: float  # monotonic clock reading
    started_at: datetime = Field(default_factory=datetime.now)

class ChangeEvent(BaseModel):
    """A reportable change for one stream"""
    stream_key: StreamKey
    candle: Candle
    price_delta: Optional[float] = None
    percent_change: Optional[float] = None
    update_count: int
    local_time: datetime = Field(default_factory=datetime.now)
