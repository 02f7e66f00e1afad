"""
Tests for app.services.scheduler.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.core.exceptions import SyncFailedError
from app.services.scheduler import SYNC_JOB_ID, SyncScheduler
from app.services.sync_service import SyncOutcome, SyncResult


class TestSyncScheduler:
    """Tests for the periodic sync job."""

    @pytest.mark.asyncio
    async def test_start_registers_interval_job(self):
        scheduler = SyncScheduler(AsyncMock(), interval_minutes=15)
        scheduler.start()
        try:
            job = scheduler._scheduler.get_job(SYNC_JOB_ID)
            assert job is not None
            assert job.max_instances == 1
            assert scheduler.next_run_at is not None
        finally:
            scheduler.shutdown()

    def test_next_run_at_before_start(self):
        scheduler = SyncScheduler(MagicMock(), interval_minutes=15)
        assert scheduler.next_run_at is None

    @pytest.mark.asyncio
    async def test_run_job_calls_sync_with_retry(self):
        service = MagicMock()
        service.run_sync_with_retry = AsyncMock(return_value=SyncResult(outcome=SyncOutcome.SUCCEEDED, inserted=2))

        await SyncScheduler(service, 60).run_job()

        service.run_sync_with_retry.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_run_job_swallows_exhausted_sync(self):
        """A failed scheduled run is logged; the scheduler keeps going."""
        service = MagicMock()
        service.run_sync_with_retry = AsyncMock(side_effect=SyncFailedError("Salesforce request timed out", 3))

        await SyncScheduler(service, 60).run_job()

        service.run_sync_with_retry.assert_awaited_once()
