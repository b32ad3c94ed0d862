import asyncio
import time
from datetime import datetime
from typing import Optional

import psutil

from klinewatch.core.logger import logger
from klinewatch.core.aggregator import Aggregator

class WatchdogService:
    def __init__(self, aggregator: Optional[Aggregator] = None, check_interval: float = 1.0,
                 heartbeat_interval: float = 60.0, lag_threshold: float = 0.5):
        self.aggregator = aggregator
        self.check_interval = check_interval
        self.heartbeat_interval = heartbeat_interval
        self.lag_threshold = lag_threshold
        self.last_tick = time.time()
        self.is_running = False
        self.start_time = datetime.now()
        self._tasks = []

    async def start(self):
        self.is_running = True
        self._tasks = [
            asyncio.create_task(self._monitor()),
            asyncio.create_task(self._heartbeat_loop()),
        ]
        logger.info("[WATCHDOG] Started.")

    async def _monitor(self):
        while self.is_running:
            start_check = time.time()
            await asyncio.sleep(self.check_interval)
            end_check = time.time()

            # If sleep(1.0) took 2.0s, the loop is starved
            lag = (end_check - start_check) - self.check_interval

            if lag > self.lag_threshold:
                logger.warning(f"[WATCHDOG] SYSTEM LAG DETECTED: {lag*1000:.2f}ms")

            self.last_tick = end_check

    def heartbeat_message(self) -> str:
        uptime = datetime.now() - self.start_time
        parts = ["Status: OK", f"Uptime: {uptime}", f"Memory: {psutil.virtual_memory().percent}% used"]
        if self.aggregator is not None:
            stats = self.aggregator.stats
            parts.append(f"Requests: {stats.total_requests}")
            parts.append(f"Updates: {stats.total_updates}")
        return " | ".join(parts)

    async def _heartbeat_loop(self):
        while self.is_running:
            try:
                logger.info(f"[HEARTBEAT] {self.heartbeat_message()}")
            except psutil.Error as e:
                logger.error(f"[WATCHDOG] Heartbeat Error: {e}")

            await asyncio.sleep(self.heartbeat_interval)

    def stop(self):
        self.is_running = False
        for task in self._tasks:
            task.cancel()
        self._tasks = []
