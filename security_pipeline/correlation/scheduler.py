"""Periodic correlation runs."""
import asyncio
from typing import List, Optional

from security_pipeline.config import settings
from security_pipeline.correlation.correlator import EventCorrelator
from security_pipeline.observability import get_logger

logger = get_logger(__name__)


class CorrelationScheduler:
    """Runs the correlator on a fixed interval in a background task."""

    def __init__(self, correlator: EventCorrelator, interval_seconds: Optional[float] = None):
        self.correlator = correlator
        self.interval_seconds = interval_seconds or settings.correlation_interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="correlation-scheduler")
        logger.info(f"Correlation scheduler started (every {self.interval_seconds}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Correlation scheduler stopped")

    async def run_once(self) -> List[str]:
        """One correlation pass; failures are logged and yield no ids."""
        try:
            return await self.correlator.correlate()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Correlation run failed: {e}")
            return []

    async def _run(self) -> None:
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval_seconds)
