"""
Background jobs for pickup shelves

The stale pickup sweep runs on an in-process loop (StalePickupJobRunner,
started with the API) and as an ARQ cron job. Both call the same monitor, and
the job lease keeps concurrent sweeps from overlapping.
"""
import asyncio
import logging
from typing import List, Optional

from fulfillment.core.config import settings
from fulfillment.services.stale_pickup_monitor import StalePickupMonitor

logger = logging.getLogger(__name__)


class StalePickupJobRunner:
    """
    Runs the stale pickup sweep every STALE_PICKUP_SWEEP_INTERVAL_SECONDS.
    """

    def __init__(self, monitor: Optional[StalePickupMonitor] = None, interval_seconds: Optional[int] = None):
        self._running = False
        self._tasks: List[asyncio.Task] = []
        self._monitor = monitor
        self.interval_seconds = interval_seconds or settings.STALE_PICKUP_SWEEP_INTERVAL_SECONDS

    @property
    def monitor(self) -> StalePickupMonitor:
        if self._monitor is None:
            self._monitor = StalePickupMonitor()
        return self._monitor

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the sweep loop."""
        if self._running:
            logger.warning("Stale pickup jobs already running")
            return

        self._running = True
        logger.info(f"Starting stale pickup sweep every {self.interval_seconds}s")
        self._tasks = [asyncio.create_task(self._sweep_loop())]

    async def stop(self):
        """Stop the sweep loop."""
        self._running = False

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []

        logger.info("Stale pickup jobs stopped")

    async def _sweep_loop(self):
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Stale pickup sweep error: {e}")

            await asyncio.sleep(self.interval_seconds)

    async def run_once(self):
        report = await self.monitor.sweep()
        if report.skipped:
            logger.info(f"Stale pickup sweep skipped: {report.reason}")
        return report


# ==================== ARQ Job Functions ====================


async def sweep_stale_pickups(ctx: dict) -> dict:
    """ARQ cron entry point for the stale pickup sweep."""
    if not settings.STALE_PICKUP_SWEEP_ENABLED:
        return {"status": "skipped", "reason": "sweep_disabled"}

    report = await StalePickupMonitor().sweep()
    return report.to_dict()


# ==================== Lifespan Integration ====================


_job_runner: Optional[StalePickupJobRunner] = None


async def start_pickup_jobs():
    """Start the stale pickup loop if enabled."""
    global _job_runner

    if not settings.STALE_PICKUP_SWEEP_ENABLED:
        logger.info("Stale pickup sweep disabled")
        return

    if _job_runner is None:
        _job_runner = StalePickupJobRunner()

    await _job_runner.start()


async def stop_pickup_jobs():
    """Stop the stale pickup loop."""
    global _job_runner

    if _job_runner:
        await _job_runner.stop()
        _job_runner = None
