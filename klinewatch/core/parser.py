"""
Kline payload parsing.

Turns one raw Binance kline message into a ``Candle``. Accepts either the
stream event envelope::

    {"e": "kline", "E": 1672515782136, "s": "BTCUSDT",
     "k": {"t": 1672515780000, "i": "1m", "o": "0.0010", "c": "0.0020", ...}}

or the bare ``k`` object. Unknown fields are ignored so newer payload
revisions keep parsing. Pure function: no I/O, no shared state.
"""
import json
import math
from datetime import datetime, timezone
from typing import Any, Mapping, Union

from klinewatch.core.errors import MalformedPayload
from klinewatch.core.models import Candle, StreamKey

Payload = Union[str, bytes, Mapping[str, Any]]

PRICE_FIELDS = {"o": "open", "h": "high", "l": "low", "c": "close", "v": "volume"}


def parse_kline(payload: Payload, key: StreamKey) -> Candle:
    """Parse a raw payload received on ``key`` into a Candle.

    Raises MalformedPayload when a required time/numeric field is missing or
    not numeric, or when the payload belongs to a different stream.
    """
    data = _decode(payload)

    kline = data.get("k", data)
    if not isinstance(kline, Mapping):
        raise MalformedPayload(f"{key}: kline body is not an object")

    symbol = data.get("s", kline.get("s"))
    if symbol is not None and str(symbol).upper() != key.symbol:
        raise MalformedPayload(f"{key}: payload is for symbol {symbol}")
    interval = kline.get("i")
    if interval is not None and interval != key.interval:
        raise MalformedPayload(f"{key}: payload is for interval {interval}")

    values = {name: _parse_number(kline, field, key) for field, name in PRICE_FIELDS.items()}

    return Candle(
        stream_key=key,
        interval_start_time=_parse_timestamp(kline, key),
        is_final=bool(kline.get("x", False)),
        **values,
    )


def _decode(payload: Payload) -> Mapping[str, Any]:
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8", errors="replace")
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except ValueError as e:
            raise MalformedPayload(f"Invalid JSON: {e}") from e
    if not isinstance(payload, Mapping):
        raise MalformedPayload(f"Expected an object, got {type(payload).__name__}")
    return payload


def _parse_timestamp(kline: Mapping[str, Any], key: StreamKey) -> datetime:
    raw = kline.get("t")
    if raw is None or isinstance(raw, bool):
        raise MalformedPayload(f"{key}: invalid timestamp {raw!r}")
    try:
        millis = int(raw)
    except (TypeError, ValueError, OverflowError):
        raise MalformedPayload(f"{key}: invalid timestamp {raw!r}")
    if isinstance(raw, float) and not raw.is_integer():
        raise MalformedPayload(f"{key}: invalid timestamp {raw!r}")
    try:
        return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        raise MalformedPayload(f"{key}: timestamp out of range {raw!r}")


def _parse_number(kline: Mapping[str, Any], field: str, key: StreamKey) -> float:
    raw = kline.get(field)
    # Binance sends prices as strings; plain numbers are accepted too
    if raw is None or isinstance(raw, bool):
        raise MalformedPayload(f"{key}: missing {PRICE_FIELDS[field]} ({field!r})")
    try:
        value = float(raw)
    except (TypeError, ValueError, OverflowError):
        raise MalformedPayload(f"{key}: failed to parse {PRICE_FIELDS[field]} {raw!r}")
    if not math.isfinite(value):
        raise MalformedPayload(f"{key}: non-finite {PRICE_FIELDS[field]} {raw!r}")
    return value
