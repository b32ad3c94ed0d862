import asyncio
import signal
import sys
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from klinewatch.core.logger import logger
from klinewatch.config import settings, Settings
from klinewatch.connectors.binance_ws import BinanceKlineSocket
from klinewatch.connectors.binance_rest import BinanceREST, BinanceKlinePoller
from klinewatch.core.lifecycle import LifecycleController
from klinewatch.core.models import StreamKey
from klinewatch.core.throttle import Throttle
from klinewatch.core.watchdog import WatchdogService


def stream_keys(cfg: Settings):
    return [StreamKey(symbol=sym, interval=interval) for sym in cfg.SYMBOLS for interval in cfg.INTERVALS]


def build_controller(cfg: Settings, rest: BinanceREST = None) -> LifecycleController:
    """Wire feeds for every (symbol, interval) with the configured transport"""
    throttle = None
    if cfg.TRANSPORT == "rest":
        rest = rest or BinanceREST(cfg.REST_BASE_URL)
        throttle = Throttle(cfg.MAX_REQUEST_RATE)

        def transport_factory(key):
            return BinanceKlinePoller(key, rest)
    else:
        def transport_factory(key):
            return BinanceKlineSocket(key, base_url=cfg.WS_BASE_URL, read_timeout=cfg.READ_TIMEOUT)

    return LifecycleController(
        stream_keys(cfg),
        transport_factory,
        throttle=throttle,
        report_every=cfg.REPORT_EVERY_N_REQUESTS,
        channel_size=cfg.CHANNEL_SIZE,
        shutdown_timeout=cfg.SHUTDOWN_TIMEOUT,
        backoff_initial=cfg.BACKOFF_INITIAL,
        backoff_max=cfg.BACKOFF_MAX,
        startup_attempts=cfg.STARTUP_ATTEMPTS,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info(f"{settings.APP_NAME} Initialized", extra={"version": settings.APP_VERSION, "transport": settings.TRANSPORT})
    logger.debug(f"Symbols: {settings.SYMBOLS}, Intervals: {settings.INTERVALS}")

    rest = BinanceREST(settings.REST_BASE_URL) if settings.TRANSPORT == "rest" else None
    controller = build_controller(settings, rest=rest)
    watchdog = WatchdogService(controller.aggregator, heartbeat_interval=settings.HEARTBEAT_INTERVAL)
    app.state.controller = controller

    await watchdog.start()
    controller.start()

    yield

    # Shutdown
    await controller.shutdown()
    watchdog.stop()
    if rest:
        await rest.close()
    logger.info(f"{settings.APP_NAME} Shutdown Complete")


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)


@app.get("/health")
async def health(request: Request):
    controller: LifecycleController = request.app.state.controller
    return {"status": "ok", "feeds": controller.feed_states()}


@app.get("/stats")
async def stats(request: Request):
    controller: LifecycleController = request.app.state.controller
    snapshot = controller.aggregator.snapshot()
    return {
        "summary": controller.aggregator.summary(),
        "streams": {str(key): entry.model_dump(mode="json") for key, entry in snapshot.items()},
    }


async def main() -> int:
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    async with lifespan(app):
        controller: LifecycleController = app.state.controller

        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGINT, controller.request_stop)
        loop.add_signal_handler(signal.SIGTERM, controller.request_stop)

        logger.info(f"{settings.APP_NAME} Core Loop Running")
        return await controller.wait_for_exit()


def run():
    try:
        code = asyncio.run(main())
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    run()
