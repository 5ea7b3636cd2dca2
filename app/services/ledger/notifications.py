"""
Ledger notifications.

Hooks receive EntryApplied, EntryQuarantined, EntryRolledBack and
ReconciliationCompleted after the corresponding transaction commits.
A failing hook is logged and never affects the ledger.
"""

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from app.utils.datetime_utils import utc_now


ENTRY_APPLIED = "EntryApplied"
ENTRY_QUARANTINED = "EntryQuarantined"
ENTRY_ROLLED_BACK = "EntryRolledBack"
RECONCILIATION_COMPLETED = "ReconciliationCompleted"


@dataclass(frozen=True)
class LedgerNotification:
    """Notification payload delivered to hooks."""

    type: str
    payload: dict[str, Any]
    emitted_at: str = field(default_factory=lambda: utc_now().isoformat())

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready form (used by the webhook sink)."""
        return {"type": self.type, "payload": self.payload, "emitted_at": self.emitted_at}


NotificationHook = Callable[[LedgerNotification], Awaitable[None] | None]


def entry_payload(entry: Any) -> dict[str, Any]:
    """Serializable view of a commission entry (ORM row or DerivedEntry)."""
    payload = {
        "event_id": entry.event_id,
        "generation": entry.generation,
        "beneficiary_id": entry.beneficiary_id,
        "referred_id": entry.referred_id,
        "amount": str(entry.amount),
        "currency": entry.currency,
        "rate_applied": str(entry.rate_applied),
    }
    entry_id = getattr(entry, "id", None)
    if entry_id is not None:
        payload["entry_id"] = entry_id
    return payload


class LedgerNotifier:
    """In-process fan-out of ledger notifications."""

    def __init__(self) -> None:
        """Initialize notifier with no hooks."""
        self._hooks: list[NotificationHook] = []

    def subscribe(self, hook: NotificationHook) -> None:
        """Register a hook (sync function or coroutine function)."""
        self._hooks.append(hook)

    async def emit(self, notification: LedgerNotification) -> None:
        """
        Deliver a notification to every hook.

        Args:
            notification: Notification to deliver
        """
        for hook in list(self._hooks):
            try:
                result = hook(notification)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    f"Notification hook failed: {e}",
                    extra={"notification_type": notification.type},
                    exc_info=True,
                )

    async def entries_applied(self, entries: list[Any]) -> None:
        """Emit EntryApplied per inserted entry."""
        for entry in entries:
            await self.emit(LedgerNotification(ENTRY_APPLIED, entry_payload(entry)))

    async def entries_quarantined(self, entries: list[Any], run_id: str) -> None:
        """Emit EntryQuarantined per entry marked duplicate."""
        for entry in entries:
            payload = entry_payload(entry)
            payload["run_id"] = run_id
            await self.emit(LedgerNotification(ENTRY_QUARANTINED, payload))

    async def entries_rolled_back(self, entries: list[Any], reason: str) -> None:
        """Emit EntryRolledBack per entry rolled back."""
        for entry in entries:
            payload = entry_payload(entry)
            payload["reason"] = reason
            await self.emit(LedgerNotification(ENTRY_ROLLED_BACK, payload))

    async def reconciliation_completed(self, run: Any) -> None:
        """Emit ReconciliationCompleted for a finished run."""
        await self.emit(
            LedgerNotification(
                RECONCILIATION_COMPLETED,
                {
                    "run_id": run.run_id,
                    "scope": run.scope,
                    "status": run.status,
                    "findings": len(run.findings or []),
                    "actions": len(run.actions or []),
                },
            )
        )
