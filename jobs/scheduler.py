"""
Reconciliation scheduler.

Enqueues a full reconciliation run at a fixed interval and serves the
health endpoint. Run with ``python -m jobs.scheduler``.
"""

import asyncio
import signal
from collections.abc import Callable
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from app.utils.datetime_utils import utc_now

RECONCILIATION_JOB_ID = "reconciliation"


class LedgerScheduler:
    """Background scheduler for ledger reconciliation."""

    def __init__(
        self,
        interval_seconds: int,
        enqueue: Callable[[str], Any],
        misfire_grace_time: int = 300,
    ) -> None:
        """
        Initialize scheduler.

        Args:
            interval_seconds: Seconds between reconciliation runs
            enqueue: Callable sending a reconciliation message for a scope
            misfire_grace_time: Seconds a late run may still start
        """
        self.interval_seconds = interval_seconds
        self.enqueue = enqueue
        self.scheduler = AsyncIOScheduler(
            timezone="UTC",
            job_defaults={
                "coalesce": True,  # Combine missed runs into one
                "max_instances": 1,
                "misfire_grace_time": misfire_grace_time,
            },
        )
        self.stats: dict[str, Any] = {
            "enqueued": 0,
            "errors": 0,
            "last_error": None,
            "started_at": None,
            "last_enqueued_at": None,
        }

    @property
    def running(self) -> bool:
        """Whether the scheduler is running."""
        return self.scheduler.running

    def start(self) -> None:
        """Register the reconciliation job and start."""
        if self.scheduler.running:
            logger.warning("Ledger scheduler already running")
            return

        self.scheduler.add_job(
            func=self.enqueue_reconciliation,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=RECONCILIATION_JOB_ID,
            name="Ledger reconciliation",
            replace_existing=True,
        )
        self.scheduler.start()
        self.stats["started_at"] = utc_now()
        logger.info(
            f"Ledger scheduler started: reconciliation every {self.interval_seconds}s"
        )

    def stop(self) -> None:
        """Stop without waiting for running jobs."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Ledger scheduler stopped")

    async def enqueue_reconciliation(self, scope: str = "all") -> None:
        """Send one reconciliation message; failures are counted, not raised."""
        try:
            self.enqueue(scope)
        except Exception as e:
            self.stats["errors"] += 1
            self.stats["last_error"] = str(e)
            logger.exception(f"Failed to enqueue reconciliation: {e}")
            return
        self.stats["enqueued"] += 1
        self.stats["last_enqueued_at"] = utc_now()
        logger.info("Reconciliation enqueued", extra={"scope": scope})


async def main() -> None:
    """Run the scheduler and health server until SIGINT/SIGTERM."""
    from app.config.logging import setup_logging
    from app.config.settings import settings
    from jobs.broker import broker  # noqa: F401
    from jobs.health import set_scheduler, start_health_server, stop_health_server
    from jobs.tasks.reconciliation import run_reconciliation

    setup_logging("scheduler", settings.log_level)

    scheduler = LedgerScheduler(
        settings.reconciler_interval_seconds, run_reconciliation.send
    )
    scheduler.start()
    set_scheduler(scheduler.scheduler, scheduler.stats)
    runner, _ = await start_health_server(port=settings.health_check_port)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await stop_event.wait()
    finally:
        scheduler.stop()
        await stop_health_server(runner)


if __name__ == "__main__":
    asyncio.run(main())
