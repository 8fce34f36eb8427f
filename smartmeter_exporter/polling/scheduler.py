"""
Scrape scheduler.

Drives the scrape orchestrator once at startup and then on a fixed
period until stopped. Cycles never overlap, and stopping waits for an
in-flight cycle to finish instead of cancelling it.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ..devices.device_session import DeviceSession
from .orchestrator import ScrapeOrchestrator

logger = logging.getLogger(__name__)

MIN_SCRAPE_INTERVAL = 10.0


class ScrapeScheduler:
    """
    Runs scrape cycles on a fixed period.

    Behaves like a ticker: the next cycle is due one interval after the
    previous one was due. When a cycle overruns, missed ticks are
    skipped and the next cycle starts right away.
    """

    def __init__(
        self,
        orchestrator: ScrapeOrchestrator,
        session: DeviceSession,
        interval: float,
    ):
        """
        Initialize the scheduler.

        Args:
            orchestrator: Orchestrator executing each cycle.
            session: Device session owned by the scrape task.
            interval: Period between cycles in seconds (minimum 10).
        """
        self.orchestrator = orchestrator
        self.session = session

        if interval < MIN_SCRAPE_INTERVAL:
            logger.warning(
                f"Scrape interval {interval}s below minimum, "
                f"using {MIN_SCRAPE_INTERVAL:g}s"
            )
            interval = MIN_SCRAPE_INTERVAL
        self.interval = float(interval)

        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._cycles = 0
        self._last_cycle_started: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the scrape loop."""
        if self.is_running:
            logger.warning("Scrape scheduler already running")
            return

        logger.info(f"Starting scrape scheduler (interval={self.interval:g}s)")
        self._running = True
        self._shutdown_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name="scrape_loop")

    async def stop(self) -> None:
        """
        Stop the scrape loop.

        No new cycle starts after this is called; a cycle already in
        progress (including its cooldowns) runs to completion first.
        """
        if self._task is None:
            return

        logger.info("Stopping scrape scheduler")
        self._running = False
        self._shutdown_event.set()

        await self._task
        self._task = None
        logger.info("Scrape scheduler stopped")

    async def _run_loop(self) -> None:
        loop = asyncio.get_running_loop()
        next_run = loop.time()

        logger.info("First scrape starting...")
        while self._running:
            await self._run_once()

            next_run += self.interval
            now = loop.time()
            if next_run < now:
                skipped = int((now - next_run) // self.interval) + 1
                logger.debug(f"Scrape overran its interval, skipping {skipped} tick(s)")
                next_run += skipped * self.interval

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=next_run - now,
                )
                # Shutdown event was set
                break
            except asyncio.TimeoutError:
                pass

        logger.debug("Scrape loop ended")

    async def _run_once(self) -> None:
        self._cycles += 1
        self._last_cycle_started = datetime.now(timezone.utc)
        try:
            outcome = await self.orchestrator.run_scrape_cycle(self.session)
            logger.debug(f"Scrape cycle {self._cycles} finished: {outcome.value}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error in scrape cycle: {e}")

    def get_stats(self) -> Dict[str, Any]:
        """Get scheduler statistics."""
        return {
            "running": self.is_running,
            "interval": self.interval,
            "cycles": self._cycles,
            "last_cycle_started": (
                self._last_cycle_started.isoformat()
                if self._last_cycle_started
                else None
            ),
            "session": self.session.to_dict(),
        }
