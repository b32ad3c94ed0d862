from typing import Callable, Optional

from klinewatch.core.logger import logger
from klinewatch.core.models import ChangeEvent

Sink = Callable[..., None]


class StatsReporter:
    """
    Renders aggregator events as report lines. Rounding happens here only;
    the aggregator keeps full precision.
    """

    def __init__(self, sink: Optional[Sink] = None):
        # sink(line, extra=dict) -> defaults to the application logger
        self.sink = sink or logger.info

    @staticmethod
    def format_change(event: ChangeEvent) -> str:
        c = event.candle
        delta = event.price_delta if event.price_delta is not None else 0.0
        pct = event.percent_change if event.percent_change is not None else 0.0
        return (
            f"Local time: {event.local_time.strftime('%Y-%m-%d %H:%M:%S')} | "
            f"Interval start: {c.interval_start_time.strftime('%Y-%m-%d %H:%M')} | "
            f"Open: {c.open:.2f} | High: {c.high:.2f} | Low: {c.low:.2f} | Close: {c.close:.2f} | "
            f"Volume: {c.volume:.2f} | "
            f"Change: {delta:+.2f} ({pct:+.2f}%) | "
            f"Updates: {event.update_count}"
        )

    @staticmethod
    def format_rate(rate: float) -> str:
        return f"Average request rate: {rate:.2f} requests/second"

    @staticmethod
    def format_average(average: Optional[float]) -> str:
        if average is None:
            return "Average price change across all symbols: undefined"
        return f"Average price change across all symbols: {average:+.2f}%"

    @staticmethod
    def format_summary(summary: dict) -> str:
        return (
            f"Session summary | Requests: {summary['total_requests']} | "
            f"Updates: {summary['total_updates']} | "
            f"{StatsReporter.format_rate(summary['request_rate'])}"
        )

    def report_change(self, event: ChangeEvent):
        self.sink(self.format_change(event), extra={
            "symbol": event.stream_key.symbol,
            "interval": event.stream_key.interval,
        })

    def report_rate(self, rate: float):
        self.sink(self.format_rate(rate), extra={"request_rate": rate})

    def report_average(self, average: Optional[float]):
        self.sink(self.format_average(average), extra={"average_percent_change": average})

    def report_summary(self, summary: dict):
        self.sink(self.format_summary(summary), extra={"summary": summary})
