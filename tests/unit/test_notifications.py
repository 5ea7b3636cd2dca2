"""Unit tests for ledger notifications and the webhook sink."""

from decimal import Decimal
from unittest.mock import patch

import dramatiq
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from app.services.ledger.notifications import (
    ENTRY_APPLIED,
    ENTRY_ROLLED_BACK,
    LedgerNotification,
    LedgerNotifier,
    entry_payload,
)
from app.services.referral.types import DerivedEntry
from jobs.tasks import ledger_notifications
from jobs.tasks.ledger_notifications import (
    WebhookDeliveryError,
    enqueue_notification,
    post_notification,
    register_webhook_sink,
)


@pytest.fixture
def entry():
    """A derived generation-1 entry."""
    return DerivedEntry(
        event_id="e1",
        generation=1,
        beneficiary_id="A",
        referred_id="P",
        amount=Decimal("1500.00"),
        currency="NGN",
        rate_applied=Decimal("0.15"),
    )


class TestLedgerNotifier:
    """Tests for in-process fan-out."""

    @pytest.mark.asyncio
    async def test_sync_and_async_hooks_receive(self, entry):
        """Both hook flavours are called."""
        notifier = LedgerNotifier()
        received = []

        def sync_hook(notification):
            received.append(("sync", notification.type))

        async def async_hook(notification):
            received.append(("async", notification.type))

        notifier.subscribe(sync_hook)
        notifier.subscribe(async_hook)
        await notifier.entries_applied([entry])

        assert received == [("sync", ENTRY_APPLIED), ("async", ENTRY_APPLIED)]

    @pytest.mark.asyncio
    async def test_failing_hook_is_isolated(self, entry):
        """A raising hook does not stop later hooks."""
        notifier = LedgerNotifier()
        received = []

        def broken(notification):
            raise RuntimeError("hook down")

        notifier.subscribe(broken)
        notifier.subscribe(received.append)
        await notifier.entries_rolled_back([entry], reason="refund")

        assert len(received) == 1
        assert received[0].type == ENTRY_ROLLED_BACK
        assert received[0].payload["reason"] == "refund"

    def test_entry_payload_stringifies_amounts(self, entry):
        """Decimals are carried as strings."""
        payload = entry_payload(entry)
        assert payload["amount"] == "1500.00"
        assert payload["rate_applied"] == "0.15"
        assert "entry_id" not in payload

    def test_to_dict(self):
        """Webhook body has type, payload and timestamp."""
        body = LedgerNotification("EntryApplied", {"event_id": "e1"}).to_dict()
        assert body["type"] == "EntryApplied"
        assert body["payload"] == {"event_id": "e1"}
        assert body["emitted_at"]


class TestWebhookSink:
    """Tests for the dramatiq webhook sink."""

    def test_not_registered_without_url(self):
        """No URL means no sink."""
        notifier = LedgerNotifier()
        with patch.object(ledger_notifications.settings, "notification_webhook_url", None):
            assert register_webhook_sink(notifier) is False

    def test_registered_with_url(self):
        """A configured URL subscribes the enqueue hook."""
        notifier = LedgerNotifier()
        with patch.object(
            ledger_notifications.settings, "notification_webhook_url", "http://hooks.local/ledger"
        ):
            assert register_webhook_sink(notifier) is True

    def test_enqueue_sends_message(self):
        """The hook enqueues a delivery message."""
        broker = dramatiq.get_broker()
        queue_name = ledger_notifications.deliver_notification.queue_name
        broker.flush(queue_name)

        enqueue_notification(LedgerNotification("EntryApplied", {"event_id": "e1"}))

        assert broker.queues[queue_name].qsize() == 1
        broker.flush(queue_name)

    @pytest.mark.asyncio
    async def test_post_notification_success(self):
        """A 2xx response completes delivery."""
        received = []

        async def handler(request):
            received.append(await request.json())
            return web.Response(status=204)

        app = web.Application()
        app.router.add_post("/ledger", handler)
        async with TestServer(app) as server:
            await post_notification(str(server.make_url("/ledger")), {"type": "EntryApplied"})

        assert received == [{"type": "EntryApplied"}]

    @pytest.mark.asyncio
    async def test_post_notification_failure_raises(self):
        """A non-2xx response raises so dramatiq retries."""
        async def handler(request):
            return web.Response(status=500, text="down")

        app = web.Application()
        app.router.add_post("/ledger", handler)
        async with TestServer(app) as server:
            with pytest.raises(WebhookDeliveryError):
                await post_notification(str(server.make_url("/ledger")), {"type": "EntryApplied"})
