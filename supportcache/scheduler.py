"""Background scheduler for periodic sync"""

import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from supportcache.config import settings
from supportcache.exceptions import SyncInProgressError
from supportcache.services.orchestrator import get_orchestrator

logger = logging.getLogger(__name__)

SYNC_JOB_ID = "sync_all"


class SyncScheduler:
    """Scheduler for the periodic full sync"""

    def __init__(self, orchestrator_factory=get_orchestrator):
        self.scheduler = BackgroundScheduler()
        self._orchestrator_factory = orchestrator_factory

    def start(self, schedule: Optional[str] = None):
        """Start the scheduler"""
        self.scheduler.start()
        logger.info("Sync scheduler started")

        crontab = settings.sync_schedule if schedule is None else schedule
        if crontab:
            self.schedule_sync(crontab)
        else:
            logger.info("Periodic sync disabled (empty sync schedule)")

    def stop(self):
        """Stop the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown()
        logger.info("Sync scheduler stopped")

    def schedule_sync(self, crontab: str):
        """(Re)schedule the full sync with a five-field cron expression"""
        existing = self.scheduler.get_job(SYNC_JOB_ID)
        if existing is not None:
            self.scheduler.remove_job(SYNC_JOB_ID)

        self.scheduler.add_job(
            func=self._sync_job,
            trigger=CronTrigger.from_crontab(crontab),
            id=SYNC_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"Scheduled full sync with cron '{crontab}'")

    def _sync_job(self):
        """Job function for the scheduled full sync"""
        try:
            logger.info("Running scheduled sync")
            result = self._orchestrator_factory().sync_all()
            logger.info(f"Scheduled sync completed: {result}")
        except SyncInProgressError:
            logger.warning("Scheduled sync skipped: a sync is already running")
        except Exception as e:
            logger.error(f"Scheduled sync failed: {e}")


# Global scheduler instance
scheduler = SyncScheduler()
