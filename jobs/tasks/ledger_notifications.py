"""
Ledger notification delivery.

Forwards ledger notifications to the configured webhook. Delivery is
at-least-once: a non-2xx response raises and dramatiq retries.
"""

from typing import Any

import aiohttp
import dramatiq
from loguru import logger

from app.config.operational_constants import (
    DRAMATIQ_TIME_LIMIT_SHORT,
    NOTIFICATION_MAX_RETRIES,
)
from app.config.settings import settings
from app.services.ledger.notifications import LedgerNotification, LedgerNotifier
from jobs.async_runner import run_async

WEBHOOK_TIMEOUT_SECONDS = 10


class WebhookDeliveryError(Exception):
    """Webhook answered with a non-2xx status."""


@dramatiq.actor(max_retries=NOTIFICATION_MAX_RETRIES, time_limit=DRAMATIQ_TIME_LIMIT_SHORT)
def deliver_notification(notification: dict[str, Any]) -> None:
    """
    POST one notification to the webhook.

    Args:
        notification: LedgerNotification.to_dict()
    """
    url = settings.notification_webhook_url
    if not url:
        logger.debug("No notification webhook configured, dropping notification")
        return
    run_async(post_notification(url, notification))


async def post_notification(url: str, notification: dict[str, Any]) -> None:
    """
    POST a notification.

    Raises:
        WebhookDeliveryError: Non-2xx response
        aiohttp.ClientError: Connection failure
    """
    timeout = aiohttp.ClientTimeout(total=WEBHOOK_TIMEOUT_SECONDS)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        async with session.post(url, json=notification) as response:
            if response.status >= 300:
                body = await response.text()
                raise WebhookDeliveryError(
                    f"Webhook returned {response.status}: {body[:200]}"
                )
    logger.debug(
        "Notification delivered",
        extra={"notification_type": notification.get("type")},
    )


def enqueue_notification(notification: LedgerNotification) -> None:
    """Notifier hook that hands a notification to the delivery actor."""
    deliver_notification.send(notification.to_dict())


def register_webhook_sink(notifier: LedgerNotifier) -> bool:
    """
    Subscribe the webhook sink when a webhook URL is configured.

    Returns:
        True if the sink was registered
    """
    if not settings.notification_webhook_url:
        return False
    notifier.subscribe(enqueue_notification)
    return True
