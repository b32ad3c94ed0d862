"""Error taxonomy for the ingestion engine.

Only ``FatalStartup`` ever reaches the process level. Everything else is
recovered where it happens and shows up as log output.
"""


class KlineWatchError(Exception):
    """Base class for klinewatch errors"""


class TransportError(KlineWatchError):
    """Connection or read failure on a feed transport. Triggers backoff and retry."""


class MalformedPayload(KlineWatchError):
    """A raw message could not be turned into a candle. The message is dropped."""


class ShutdownTimeout(KlineWatchError):
    """A feed did not reach CLOSED within the shutdown bound."""


class FatalStartup(KlineWatchError):
    """No feed could be established for any configured stream."""
