import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock
from klinewatch.core.aggregator import Aggregator, CLOSE
from klinewatch.core.models import Candle, StreamKey
from klinewatch.core.reporter import StatsReporter

BTC = StreamKey(symbol="BTCUSDT", interval="1m")
ETH = StreamKey(symbol="ETHUSDT", interval="1m")
T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

def candle(key=BTC, close=100.0, start=T0, **kw):
    fields = dict(open=100.0, high=110.0, low=90.0, volume=5.0)
    fields.update(kw)
    return Candle(stream_key=key, interval_start_time=start, close=close, **fields)

@pytest.fixture
def reporter():
    return MagicMock(spec=StatsReporter)

@pytest.fixture
def agg(reporter):
    return Aggregator(asyncio.Queue(), reporter=reporter)

def test_identical_candles_are_one_update(agg, reporter):
    c = candle()
    first = agg.process(c)
    second = agg.process(candle())

    assert first is not None
    assert second is None
    assert reporter.report_change.call_count == 1
    assert agg.cache[BTC].update_count == 1
    assert agg.stats.total_requests == 2
    assert agg.stats.total_updates == 1

def test_first_observation_has_no_change(agg):
    event = agg.process(candle(close=100.0))

    assert event.price_delta is None
    assert event.percent_change is None
    assert event.update_count == 1
    assert agg.cache[BTC].previous_close == 100.0

def test_percent_change(agg):
    agg.process(candle(close=100.0))
    event = agg.process(candle(close=105.0))

    assert event.price_delta == pytest.approx(5.0)
    assert event.percent_change == pytest.approx(5.0)
    assert event.update_count == 2

@pytest.mark.parametrize("field,value", [
    ("open", 101.0), ("high", 111.0), ("low", 89.0), ("volume", 6.0),
])
def test_any_field_change_is_reported(agg, reporter, field, value):
    agg.process(candle())
    event = agg.process(candle(**{field: value}))

    assert event is not None
    assert event.price_delta == 0.0
    assert reporter.report_change.call_count == 2

def test_new_interval_start_is_reported(agg):
    agg.process(candle())
    assert agg.process(candle(start=T0 + timedelta(minutes=1))) is not None

def test_is_final_flag_alone_is_not_a_change(agg):
    agg.process(candle(is_final=False))
    assert agg.process(candle(is_final=True)) is None

def test_previous_close_tracks_reported_value_only(agg):
    agg.process(candle(close=100.0))
    agg.process(candle(close=100.0))  # no-op
    event = agg.process(candle(close=110.0))

    assert event.percent_change == pytest.approx(10.0)
    assert agg.cache[BTC].previous_close == 110.0

def test_zero_previous_close_gives_undefined_percent(agg):
    agg.process(candle(close=0.0))
    event = agg.process(candle(close=1.0))

    assert event.price_delta == 1.0
    assert event.percent_change is None

def test_rate_reported_every_hundred_requests(reporter):
    agg = Aggregator(asyncio.Queue(), reporter=reporter)
    seen_at = []
    reporter.report_rate.side_effect = lambda rate: seen_at.append(agg.stats.total_requests)

    for i in range(250):
        key = BTC if i % 2 else ETH
        agg.process(candle(key=key, close=100.0 + i))

    assert reporter.report_rate.call_count == 2
    assert seen_at == [100, 200]

def test_rate_counts_no_op_messages(reporter):
    agg = Aggregator(asyncio.Queue(), reporter=reporter, report_every=10)
    for _ in range(10):
        agg.process(candle())

    reporter.report_rate.assert_called_once()
    assert agg.stats.total_updates == 1

def test_request_rate_uses_elapsed_time(reporter):
    now = [1000.0]
    agg = Aggregator(asyncio.Queue(), reporter=reporter, clock=lambda: now[0])
    for i in range(50):
        agg.process(candle(close=100.0 + i))
    now[0] += 10.0

    assert agg.request_rate() == pytest.approx(5.0)

def test_request_rate_with_no_elapsed_time(reporter):
    agg = Aggregator(asyncio.Queue(), reporter=reporter, clock=lambda: 5.0)
    agg.process(candle())
    assert agg.request_rate() == 0.0

def test_cross_symbol_average(agg, reporter):
    agg.process(candle(BTC, close=100.0))
    agg.process(candle(ETH, close=100.0))
    assert agg.average_percent_change() is None

    agg.process(candle(BTC, close=102.0))
    agg.process(candle(ETH, close=99.0))

    assert agg.average_percent_change() == pytest.approx(0.5)
    reporter.report_average.assert_called_with(pytest.approx(0.5))

def test_average_reported_with_every_change(agg, reporter):
    agg.process(candle())
    agg.process(candle())
    agg.process(candle(close=101.0))

    assert reporter.report_average.call_count == reporter.report_change.call_count == 2

def test_snapshot_is_a_copy(agg):
    agg.process(candle(close=100.0))
    snap = agg.snapshot()
    snap[BTC].update_count = 99
    snap[BTC].previous_close = 1.0

    assert agg.cache[BTC].update_count == 1
    assert agg.cache[BTC].previous_close == 100.0

def test_summary(agg):
    agg.process(candle(BTC, close=100.0))
    agg.process(candle(BTC, close=100.0))
    agg.process(candle(ETH, close=50.0))

    summary = agg.summary()
    assert summary["total_requests"] == 3
    assert summary["total_updates"] == 2
    assert summary["updates"] == {"BTCUSDT@1m": 1, "ETHUSDT@1m": 1}
    assert summary["average_percent_change"] is None

@pytest.mark.asyncio
async def test_run_drains_queue_in_order_then_stops(reporter):
    queue = asyncio.Queue()
    agg = Aggregator(queue, reporter=reporter)
    for close in (101.0, 102.0, 103.0):
        await queue.put(candle(close=close))
    await queue.put(CLOSE)

    await asyncio.wait_for(agg.run(), timeout=1.0)

    closes = [call.args[0].candle.close for call in reporter.report_change.call_args_list]
    assert closes == [101.0, 102.0, 103.0]
    assert agg.cache[BTC].last_displayed.close == 103.0

@pytest.mark.asyncio
async def test_run_survives_bad_items(reporter):
    queue = asyncio.Queue()
    agg = Aggregator(queue, reporter=reporter)
    await queue.put("not a candle")
    await queue.put(candle(close=100.0))
    await queue.put(CLOSE)

    await asyncio.wait_for(agg.run(), timeout=1.0)

    assert agg.errors == 1
    assert agg.stats.total_updates == 1

def test_rate_reported_even_when_change_sink_fails(reporter):
    agg = Aggregator(asyncio.Queue(), reporter=reporter, report_every=3)
    reporter.report_change.side_effect = [None, None, RuntimeError("sink closed")]

    agg.process(candle(close=100.0))
    agg.process(candle(close=101.0))
    with pytest.raises(RuntimeError):
        agg.process(candle(close=102.0))

    reporter.report_rate.assert_called_once()

def test_non_candle_is_not_counted(agg, reporter):
    with pytest.raises(AttributeError):
        agg.process("not a candle")

    assert agg.stats.total_requests == 0
    reporter.report_rate.assert_not_called()

@pytest.mark.asyncio
async def test_bad_item_does_not_shift_rate_cadence(reporter):
    queue = asyncio.Queue()
    agg = Aggregator(queue, reporter=reporter, report_every=10)
    seen_at = []
    reporter.report_rate.side_effect = lambda rate: seen_at.append(agg.stats.total_requests)

    await queue.put(object())
    for i in range(10):
        await queue.put(candle(close=100.0 + i))
    await queue.put(CLOSE)

    await asyncio.wait_for(agg.run(), timeout=1.0)

    assert agg.errors == 1
    assert seen_at == [10]
