"""Periodic sync trigger using APScheduler."""

import logging
from datetime import datetime, timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.core.exceptions import SyncFailedError
from app.services.sync_service import SyncService

logger = logging.getLogger(__name__)

SYNC_JOB_ID = "salesforce_sync"


class SyncScheduler:
    def __init__(self, sync_service: SyncService, interval_minutes: int):
        self.sync_service = sync_service
        self.interval_minutes = interval_minutes
        self._scheduler = AsyncIOScheduler(timezone=timezone.utc)

    def start(self) -> None:
        self._scheduler.add_job(
            self.run_job,
            IntervalTrigger(minutes=self.interval_minutes),
            id=SYNC_JOB_ID,
            name="Salesforce order sync",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
            next_run_time=datetime.now(timezone.utc),
        )
        self._scheduler.start()
        logger.info("Scheduled order sync every %d minute(s)", self.interval_minutes)

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)

    @property
    def next_run_at(self) -> Optional[datetime]:
        job = self._scheduler.get_job(SYNC_JOB_ID)
        return job.next_run_time if job else None

    async def run_job(self) -> None:
        try:
            result = await self.sync_service.run_sync_with_retry()
        except SyncFailedError as e:
            logger.error("Scheduled sync failed: %s", e)
            return
        if result.skipped:
            logger.info("Scheduled sync skipped, a run is already in progress")
        else:
            logger.info(
                "Scheduled sync done: %d inserted, %d updated, %d failed",
                result.inserted, result.updated, result.errors,
            )
