"""Periodic maintenance for SiteFoundry.

Runs the stale-run sweep on an APScheduler interval so runs orphaned by a
crashed worker process end up ``failed`` instead of ``running`` forever.
"""

import logging
from typing import Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from server.jobs import IngestionManager

logger = logging.getLogger(__name__)

STALE_SWEEP_JOB_ID = "stale_run_sweep"


class MaintenanceScheduler:
    """Interval scheduler around :meth:`IngestionManager.mark_stuck_runs_as_failed`."""

    def __init__(self, manager: IngestionManager, interval_minutes: int = 5):
        self.manager = manager
        self.interval_minutes = interval_minutes
        self.scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return self.scheduler is not None and self.scheduler.running

    def start(self):
        """Start the scheduler; must be called from a running event loop."""
        if self.running:
            return

        self.scheduler = AsyncIOScheduler(
            executors={'default': AsyncIOExecutor()},
            job_defaults={'coalesce': True, 'max_instances': 1}
        )
        self.scheduler.add_listener(self._job_executed, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(self._job_error, EVENT_JOB_ERROR)
        self.scheduler.add_job(
            self.run_stale_sweep,
            'interval',
            minutes=self.interval_minutes,
            id=STALE_SWEEP_JOB_ID,
            replace_existing=True
        )
        self.scheduler.start()
        logger.info(f"Maintenance scheduler started (stale sweep every {self.interval_minutes} min)")

    def shutdown(self):
        if self.scheduler is not None:
            if self.scheduler.running:
                self.scheduler.shutdown(wait=False)
            self.scheduler = None
            logger.info("Maintenance scheduler shutdown complete")

    async def run_stale_sweep(self) -> int:
        """One sweep. Errors are logged so the schedule keeps running."""
        try:
            count = await self.manager.mark_stuck_runs_as_failed()
        except Exception as e:
            logger.error(f"Stale run sweep failed: {e}", exc_info=True)
            return 0

        if count:
            logger.warning(f"Stale run sweep failed {count} run(s)")
        else:
            logger.debug("Stale run sweep found nothing to reconcile")
        return count

    def _job_executed(self, event):
        logger.debug(f"Maintenance job {event.job_id} executed")

    def _job_error(self, event):
        logger.error(f"Maintenance job {event.job_id} raised: {event.exception}")
