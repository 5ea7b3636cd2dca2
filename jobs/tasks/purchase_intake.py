"""
Purchase intake task.

Feeds purchase events published by the host platform into the ledger.
Transient failures and deadline expiry raise so dramatiq retries the
message; resubmitting an event is always safe.
"""

from typing import Any

import dramatiq
from loguru import logger

from app.config.operational_constants import DRAMATIQ_TIME_LIMIT_SHORT
from app.utils.exceptions import LedgerError
from app.utils.redis_utils import get_redis_client
from jobs.async_runner import run_async
from jobs.tasks.ledger_notifications import register_webhook_sink
from jobs.utils.database import (
    create_task_engine,
    create_task_ledger,
    create_task_session_maker,
)


@dramatiq.actor(
    time_limit=DRAMATIQ_TIME_LIMIT_SHORT,
    retry_when=lambda retries, exc: (
        retries < 5 and isinstance(exc, LedgerError) and exc.retry_safe
    ),
)
def submit_purchase_event(payload: dict[str, Any]) -> None:
    """
    Submit one purchase event.

    Args:
        payload: PurchaseEvent fields as JSON
    """
    run_async(_submit_purchase_event_async(payload))


async def _submit_purchase_event_async(payload: dict[str, Any]) -> None:
    """Async implementation of purchase submission."""
    engine = create_task_engine()
    redis_client = await get_redis_client()
    try:
        ledger = create_task_ledger(create_task_session_maker(engine), redis_client)
        register_webhook_sink(ledger.notifier)

        result = await ledger.submit_purchase(payload)
        extra = {"event_id": result.event_id, "status": result.status}
        if result.status == "rejected":
            logger.warning(f"Purchase event rejected: {result.reason}", extra=extra)
        elif result.apply is not None:
            logger.info(f"Purchase event processed: {result.apply.status}", extra=extra)
        else:
            logger.info("Purchase event processed", extra=extra)
    finally:
        await redis_client.aclose()
        await engine.dispose()
