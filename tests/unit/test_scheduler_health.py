"""Unit tests for the reconciliation scheduler and health endpoints."""

import json
from unittest.mock import MagicMock

import pytest
from aiohttp.test_utils import make_mocked_request

from jobs import health
from jobs.scheduler import RECONCILIATION_JOB_ID, LedgerScheduler
from jobs.tasks.reconciliation import reconciliation_lock_key


@pytest.fixture(autouse=True)
def reset_health():
    """Clear the registered scheduler between tests."""
    health._scheduler = None
    health._stats = None
    yield
    health._scheduler = None
    health._stats = None


class TestLedgerScheduler:
    """Tests for LedgerScheduler."""

    @pytest.mark.asyncio
    async def test_enqueue_counts_success(self):
        """A successful enqueue updates stats."""
        enqueue = MagicMock()
        scheduler = LedgerScheduler(900, enqueue)

        await scheduler.enqueue_reconciliation()

        enqueue.assert_called_once_with("all")
        assert scheduler.stats["enqueued"] == 1
        assert scheduler.stats["last_enqueued_at"] is not None

    @pytest.mark.asyncio
    async def test_enqueue_failure_counted(self):
        """A broker failure is recorded, not raised."""
        scheduler = LedgerScheduler(900, MagicMock(side_effect=ConnectionError("redis down")))

        await scheduler.enqueue_reconciliation("beneficiary:A")

        assert scheduler.stats["errors"] == 1
        assert scheduler.stats["last_error"] == "redis down"
        assert scheduler.stats["enqueued"] == 0

    @pytest.mark.asyncio
    async def test_start_registers_interval_job(self):
        """Start adds one coalescing reconciliation job."""
        scheduler = LedgerScheduler(60, MagicMock())
        scheduler.start()
        try:
            job = scheduler.scheduler.get_job(RECONCILIATION_JOB_ID)
            assert job is not None
            assert job.trigger.interval.total_seconds() == 60
            assert scheduler.running
            assert scheduler.stats["started_at"] is not None
        finally:
            scheduler.stop()

    def test_lock_key_per_scope(self):
        """Runs over different scopes do not block each other."""
        assert reconciliation_lock_key("all") == "reconciliation:all"
        assert reconciliation_lock_key("beneficiary:A") != reconciliation_lock_key("all")


class TestHealthHandlers:
    """Tests for the health endpoints."""

    @pytest.mark.asyncio
    async def test_unhealthy_without_scheduler(self):
        """No registered scheduler is a 503."""
        response = await health.health_handler(make_mocked_request("GET", "/health"))
        assert response.status == 503

    @pytest.mark.asyncio
    async def test_healthy_reports_reconciliation_stats(self):
        """A running scheduler reports its jobs and last enqueue."""
        scheduler = LedgerScheduler(60, MagicMock())
        scheduler.start()
        try:
            await scheduler.enqueue_reconciliation()
            health.set_scheduler(scheduler.scheduler, scheduler.stats)

            response = await health.health_handler(make_mocked_request("GET", "/health"))
            body = json.loads(response.body)

            assert response.status == 200
            assert body["status"] == "healthy"
            assert body["jobs_count"] == 1
            assert body["reconciliation"]["enqueued"] == 1
            assert isinstance(body["reconciliation"]["last_enqueued_at"], str)
        finally:
            scheduler.stop()

    @pytest.mark.asyncio
    async def test_readiness_follows_scheduler(self):
        """Readiness is 503 until the scheduler runs."""
        response = await health.readiness_handler(make_mocked_request("GET", "/readiness"))
        assert response.status == 503

    @pytest.mark.asyncio
    async def test_liveness_always_ok(self):
        """Liveness needs nothing registered."""
        response = await health.liveness_handler(make_mocked_request("GET", "/liveness"))
        assert response.status == 200
