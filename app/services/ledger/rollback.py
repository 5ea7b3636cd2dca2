"""
Event rollback.

Explicit admin rollback of a purchase event: every active entry of the
event moves to rolled_back and its aggregate contribution is reversed.
Repeating a rollback is a noop.
"""

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.enums import EntryStatus
from app.repositories.admin_audit_log_repository import AdminAuditLogRepository
from app.repositories.commission_entry_repository import CommissionEntryRepository
from app.repositories.purchase_event_repository import PurchaseEventRepository
from app.services.ledger.aggregates import AggregateMutator, aggregate_lock_key
from app.services.ledger.config import LedgerConfig
from app.services.ledger.notifications import LedgerNotifier
from app.services.ledger.types import RollbackResult
from app.services.ledger.writer import event_lock_key
from app.utils.datetime_utils import utc_now
from app.utils.distributed_lock import DistributedLock
from app.utils.exceptions import TransientStoreError
from app.utils.retry import store_deadline


class EventRollback:
    """Rolls back all active entries of an event."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        config: LedgerConfig,
        lock: DistributedLock,
        notifier: LedgerNotifier | None = None,
    ) -> None:
        """Initialize event rollback."""
        self.session_maker = session_maker
        self.config = config
        self.lock = lock
        self.notifier = notifier or LedgerNotifier()
        self.retry_policy = config.retry_policy()

    async def rollback(self, event_id: str, reason: str, actor: str = "system") -> RollbackResult:
        """
        Roll back an event.

        Args:
            event_id: Event to roll back
            reason: Why (recorded on the event, entries and audit log)
            actor: Admin performing the rollback

        Returns:
            RollbackResult: rolled_back, noop or not_found
        """
        ids = {"event_id": event_id}
        result, entries = await self.retry_policy.run(
            "rollback.event", lambda: self._rollback_once(event_id, reason, actor), ids
        )

        if result.status == "rolled_back":
            logger.info(
                f"Event rolled back: {result.entries_rolled_back} entries",
                extra={"event_id": event_id, "reason": reason, "actor": actor},
            )
            await self.notifier.entries_rolled_back(entries, reason)
        elif result.status == "noop":
            logger.info("Rollback already applied", extra={"event_id": event_id})
        else:
            logger.warning("Rollback of unknown event", extra={"event_id": event_id})
        return result

    async def _active_beneficiary_keys(self, event_id: str) -> list[str]:
        async with self.session_maker() as session:
            entries = await CommissionEntryRepository(session).find_for_event(
                event_id, status=EntryStatus.ACTIVE
            )
        return sorted({aggregate_lock_key(e.beneficiary_id, e.currency) for e in entries})

    async def _rollback_once(self, event_id: str, reason: str, actor: str):
        ids = {"event_id": event_id}
        aggregate_keys = await self._active_beneficiary_keys(event_id)
        try:
            async with self.lock.lock_many(
                [event_lock_key(event_id), *aggregate_keys],
                timeout=self.config.lock_timeout,
                blocking_timeout=self.config.lock_blocking_timeout,
            ):
                async with store_deadline(self.config.store_call_deadline, "rollback.event", ids):
                    async with self.session_maker() as session:
                        async with session.begin():
                            return await self._apply_rollback(
                                session, event_id, reason, actor, set(aggregate_keys)
                            )
        except TimeoutError as e:
            raise TransientStoreError(
                f"Aggregate lock contention: {e}", "rollback.event", ids
            ) from e

    async def _apply_rollback(
        self,
        session: AsyncSession,
        event_id: str,
        reason: str,
        actor: str,
        locked_keys: set[str],
    ):
        event_repo = PurchaseEventRepository(session)
        entry_repo = CommissionEntryRepository(session)
        now = utc_now()

        record = await event_repo.get_by_id(event_id)
        if record is None:
            return RollbackResult(status="not_found", event_id=event_id), []

        active = await entry_repo.find_for_event(event_id, status=EntryStatus.ACTIVE)
        current_keys = {aggregate_lock_key(e.beneficiary_id, e.currency) for e in active}
        if not current_keys <= locked_keys:
            # Entries appeared between the lookup and the lock; take the locks again
            raise TransientStoreError(
                "Active entries changed before lock", "rollback.event", {"event_id": event_id}
            )

        if not active and record.rolled_back_at is not None:
            return RollbackResult(status="noop", event_id=event_id), []

        await entry_repo.mark_status(
            [e.id for e in active], EntryStatus.ROLLED_BACK, reason, now
        )
        await AggregateMutator(session).remove_entries(active, now)
        await event_repo.mark_rolled_back(event_id, reason, now)
        await AdminAuditLogRepository(session).log_action(
            action="rollback_event",
            actor=actor,
            target=event_id,
            details={
                "reason": reason,
                "entry_ids": [e.id for e in active],
                "amounts": {str(e.id): str(e.amount) for e in active},
            },
        )
        return (
            RollbackResult(
                status="rolled_back",
                event_id=event_id,
                entries_rolled_back=len(active),
                beneficiaries=sorted({e.beneficiary_id for e in active}),
            ),
            active,
        )
