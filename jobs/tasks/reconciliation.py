"""
Reconciliation task.

Runs the reconciler over a scope. Full runs are serialized through a
distributed lock so only one executes at a time across workers.
"""

import dramatiq
from loguru import logger

from app.config.operational_constants import DRAMATIQ_TIME_LIMIT_LONG
from app.utils.distributed_lock import DistributedLock
from app.utils.redis_utils import get_redis_client
from jobs.async_runner import run_async
from jobs.tasks.ledger_notifications import register_webhook_sink
from jobs.utils.database import (
    create_task_engine,
    create_task_ledger,
    create_task_session_maker,
)


def reconciliation_lock_key(scope: str) -> str:
    """Lock key guarding runs over one scope."""
    return f"reconciliation:{scope}"


@dramatiq.actor(max_retries=1, time_limit=DRAMATIQ_TIME_LIMIT_LONG)
def run_reconciliation(scope: str = "all") -> None:
    """
    Run the reconciler.

    Args:
        scope: all, beneficiary:<id> or event:<id>
    """
    logger.info(f"Starting reconciliation task: {scope}")
    try:
        run_async(_run_reconciliation_async(scope))
    except Exception as e:
        logger.exception(f"Reconciliation task failed: {e}")
        raise


async def _run_reconciliation_async(scope: str) -> None:
    """Async implementation of the reconciliation task."""
    engine = create_task_engine()
    redis_client = await get_redis_client()
    try:
        ledger = create_task_ledger(create_task_session_maker(engine), redis_client)
        register_webhook_sink(ledger.notifier)

        run_lock = DistributedLock(redis_client=redis_client)
        async with run_lock.lock(
            reconciliation_lock_key(scope),
            timeout=ledger.config.reconcile_lock_timeout,
            blocking=False,
        ) as acquired:
            if not acquired:
                logger.info(
                    "Reconciliation already running, skipping",
                    extra={"scope": scope},
                )
                return
            run = await ledger.run_reconciliation(scope)
            logger.info(
                f"Reconciliation task finished: {run.status}",
                extra={"run_id": run.run_id, "scope": scope},
            )
    finally:
        await redis_client.aclose()
        await engine.dispose()
