"""Background scheduler loops.

One asyncio task per job:

- price monitor: fetch a quote (with backoff), fill limit orders, check liquidations
- DCA tick
- interest accrual
- limit-order expiry sweep

Engine calls are blocking and run in worker threads. A failing iteration is
logged and the job simply runs again on its next interval.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from core.market_data.oracle import fetch_quote_with_retry
from core.platform import Platform

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SchedulerJob:
    name: str
    interval_seconds: float
    func: Callable[[], Any]


class BackgroundScheduler:
    """Runs the platform's periodic jobs on an asyncio event loop."""

    def __init__(self, platform: Platform, *, sleep: Optional[Callable[[float], None]] = None) -> None:
        self._platform = platform
        self._sleep = sleep
        self._tasks: list[asyncio.Task] = []
        self._iterations: dict[str, int] = {}
        config = platform.config
        self.jobs = [
            SchedulerJob("price_monitor", config.price_tick_seconds, self._price_tick),
            SchedulerJob("dca", config.dca_tick_seconds, self._dca_tick),
            SchedulerJob("interest_accrual", config.interest_accrual_seconds, platform.accrue_interest),
            SchedulerJob("order_expiry", config.expiry_sweep_seconds, platform.expire_orders),
        ]

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def iterations(self, name: str) -> int:
        return self._iterations.get(name, 0)

    def _fresh_quote(self):
        kwargs = {} if self._sleep is None else {"sleep": self._sleep}
        return fetch_quote_with_retry(self._platform.oracle, self._platform.config, **kwargs)

    def _price_tick(self) -> Any:
        return self._platform.on_price_tick(self._fresh_quote())

    def _dca_tick(self) -> Any:
        return self._platform.run_dca_tick(self._fresh_quote())

    async def run_job_once(self, job: SchedulerJob) -> Any:
        """Run one iteration in a worker thread; errors are logged, not raised."""
        try:
            result = await asyncio.to_thread(job.func)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Scheduler job %s failed: %s", job.name, e)
            result = None
        self._iterations[job.name] = self._iterations.get(job.name, 0) + 1
        return result

    async def _loop(self, job: SchedulerJob) -> None:
        logger.info("Starting %s loop (every %.0fs)", job.name, job.interval_seconds)
        try:
            while True:
                await self.run_job_once(job)
                await asyncio.sleep(job.interval_seconds)
        except asyncio.CancelledError:
            logger.info("%s loop cancelled", job.name)
            raise

    def start(self) -> None:
        """Start every job loop on the running event loop."""
        if self.running:
            return
        self._tasks = [asyncio.create_task(self._loop(job), name=f"bittrade-{job.name}") for job in self.jobs]

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Background scheduler stopped")

    async def run_forever(self) -> None:
        self.start()
        try:
            await asyncio.gather(*self._tasks)
        finally:
            await self.stop()
