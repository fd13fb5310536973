"""Background cleanup jobs for the response cache.

Two independent fixed-interval jobs run on the application's event loop:
- expiry sweep: drops entries past ``expires_at`` (hourly by default)
- reclamation: evicts long-unread entries when the store is too large
  (every 6 hours by default)

A failing run is logged and the job simply runs again at its next interval.
"""

import asyncio
import logging
from datetime import timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .service import CacheService

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "cache_expiry_sweep"
RECLAIM_JOB_ID = "cache_reclaim"


class CacheJanitor:
    """Schedules periodic expiry sweeps and size reclamation."""

    def __init__(
        self,
        cache: CacheService,
        sweep_interval: timedelta = timedelta(hours=1),
        reclaim_interval: timedelta = timedelta(hours=6),
        scheduler: AsyncIOScheduler | None = None,
    ) -> None:
        self._cache = cache
        self._sweep_interval = sweep_interval
        self._reclaim_interval = reclaim_interval
        self.scheduler = scheduler or AsyncIOScheduler()

    async def run_sweep(self) -> int:
        """Run one expiry sweep. Returns entries removed, 0 on failure."""
        try:
            removed = await self._cache.sweep_expired()
        except Exception:
            logger.exception("[JANITOR] Cache expiry sweep failed")
            return 0
        logger.info("[JANITOR] Cache cleanup completed")
        return removed

    async def run_reclaim(self) -> int:
        """Run one reclamation pass. Returns entries removed, 0 on failure."""
        try:
            removed = await self._cache.reclaim()
        except Exception:
            logger.exception("[JANITOR] Cache reclamation failed")
            return 0
        logger.info("[JANITOR] Cache optimization completed")
        return removed

    def start(self) -> None:
        """Register both jobs and start the scheduler.

        Must be called from within a running event loop.
        """
        self.scheduler.add_job(
            self.run_sweep,
            trigger=IntervalTrigger(seconds=self._sweep_interval.total_seconds()),
            id=SWEEP_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self.run_reclaim,
            trigger=IntervalTrigger(seconds=self._reclaim_interval.total_seconds()),
            id=RECLAIM_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info(
            f"[JANITOR] Started: sweep every {self._sweep_interval}, "
            f"reclaim every {self._reclaim_interval}"
        )

    async def shutdown(self) -> None:
        """Stop the scheduler without waiting for running jobs."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            # The scheduler stops from a callback queued on the event loop
            await asyncio.sleep(0)
            logger.info("[JANITOR] Stopped")
