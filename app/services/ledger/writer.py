"""
Ledger writer.

Persists an event's chain snapshot and derived commission entries and
updates the affected aggregates, all in one transaction under the
aggregate locks. Re-applying the same derivation is a noop; an active
entry that disagrees with the derivation aborts the whole write.
"""

from collections.abc import Collection

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.chain_snapshot import ChainSnapshotLink
from app.models.enums import EntryStatus
from app.repositories.chain_snapshot_repository import ChainSnapshotRepository
from app.repositories.commission_entry_repository import CommissionEntryRepository
from app.repositories.dead_letter_repository import LedgerDeadLetterRepository
from app.repositories.purchase_event_repository import PurchaseEventRepository
from app.services.ledger.aggregates import AggregateMutator, aggregate_lock_key
from app.services.ledger.config import LedgerConfig
from app.services.ledger.notifications import LedgerNotifier
from app.services.ledger.types import ApplyResult
from app.services.referral.types import DerivedEntry, PurchaseEvent, ResolvedChain
from app.utils.datetime_utils import utc_now
from app.utils.distributed_lock import DistributedLock
from app.utils.exceptions import (
    ConflictError,
    LedgerError,
    TransientStoreError,
    ValidationError,
)
from app.utils.money import amounts_agree
from app.utils.retry import store_deadline


def event_lock_key(event_id: str) -> str:
    """Lock key serializing writes that touch one event."""
    return f"event:{event_id}"


class LedgerWriter:
    """Idempotent, per-event atomic commission writer."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        config: LedgerConfig,
        lock: DistributedLock,
        notifier: LedgerNotifier | None = None,
    ) -> None:
        """
        Initialize ledger writer.

        Args:
            session_maker: Session factory; each attempt gets its own transaction
            config: Ledger configuration
            lock: Shared aggregate lock
            notifier: Post-commit notification fan-out
        """
        self.session_maker = session_maker
        self.config = config
        self.lock = lock
        self.notifier = notifier or LedgerNotifier()
        self.retry_policy = config.retry_policy()

    async def apply(
        self,
        event: PurchaseEvent,
        chain: ResolvedChain,
        derived: Collection[DerivedEntry],
    ) -> ApplyResult:
        """
        Apply derived entries for an accepted event.

        Transient failures are retried per the retry policy. A conflict is
        dead-lettered and returned, never raised.

        Args:
            event: Accepted purchase event
            chain: Chain to capture if the event has no snapshot yet
            derived: Entries that should exist (only missing ones are inserted)

        Returns:
            ApplyResult (applied, noop or conflict)

        Raises:
            TransientStoreError: Retries exhausted
            LedgerCancelledError: Deadline expired
            ValidationError: Event was never accepted
        """
        ids = {"event_id": event.event_id}
        try:
            result = await self.retry_policy.run(
                "writer.apply",
                lambda: self._apply_once(event, chain, derived),
                ids,
            )
        except ConflictError as e:
            logger.warning(
                f"Ledger write refused: {e.message}",
                extra={"event_id": event.event_id, "conflicts": e.ids.get("conflicts")},
            )
            await self.record_failure(e, event)
            return ApplyResult(
                status="conflict",
                event_id=event.event_id,
                conflicts=list(e.ids.get("conflicts", [])),
            )
        except TransientStoreError as e:
            await self.record_failure(e, event)
            raise

        if result.status == "applied":
            logger.info(
                f"Ledger entries applied: {result.applied_count}",
                extra={"event_id": event.event_id, "inserted": result.applied_count},
            )
            await self.notifier.entries_applied(result.inserted)
        else:
            logger.info("Ledger apply was a noop", extra={"event_id": event.event_id})
        return result

    async def _apply_once(
        self,
        event: PurchaseEvent,
        chain: ResolvedChain,
        derived: Collection[DerivedEntry],
    ) -> ApplyResult:
        """One locked, deadline-bounded attempt."""
        lock_keys = [event_lock_key(event.event_id)]
        lock_keys.extend(
            aggregate_lock_key(entry.beneficiary_id, entry.currency) for entry in derived
        )
        ids = {"event_id": event.event_id}

        try:
            async with self.lock.lock_many(
                lock_keys,
                timeout=self.config.lock_timeout,
                blocking_timeout=self.config.lock_blocking_timeout,
            ):
                async with store_deadline(
                    self.config.store_call_deadline, "writer.apply", ids
                ):
                    async with self.session_maker() as session:
                        async with session.begin():
                            return await self._write(session, event, chain, derived)
        except TimeoutError as e:
            raise TransientStoreError(
                f"Aggregate lock contention: {e}", "writer.apply", ids
            ) from e

    async def _write(
        self,
        session: AsyncSession,
        event: PurchaseEvent,
        chain: ResolvedChain,
        derived: Collection[DerivedEntry],
    ) -> ApplyResult:
        event_repo = PurchaseEventRepository(session)
        entry_repo = CommissionEntryRepository(session)
        now = utc_now()

        record = await event_repo.get_by_id(event.event_id)
        if record is None:
            raise ValidationError(
                "Event is not in the events log", "writer.apply",
                {"event_id": event.event_id},
            )
        if record.rolled_back_at is not None:
            return ApplyResult(status="noop", event_id=event.event_id)

        if record.chain_captured_at is None:
            session.add_all(
                ChainSnapshotLink(
                    event_id=event.event_id,
                    generation=link.generation,
                    beneficiary_id=link.beneficiary_id,
                    suppressed=link.suppressed,
                    captured_at=now,
                )
                for link in chain.links
            )
            record.chain_captured_at = now
            await session.flush()

        existing: dict[tuple[str, int, str], list] = {}
        for entry in await entry_repo.find_for_event(event.event_id):
            existing.setdefault(entry.key, []).append(entry)

        to_insert: list[DerivedEntry] = []
        conflicts: list[dict] = []
        for entry in derived:
            rows = existing.get(entry.key, [])
            active = [row for row in rows if row.status == EntryStatus.ACTIVE]
            if active:
                stored = active[0]
                if not amounts_agree(stored.amount, entry.amount, entry.currency):
                    conflicts.append(
                        {
                            "entry_id": stored.id,
                            "generation": entry.generation,
                            "beneficiary_id": entry.beneficiary_id,
                            "stored_amount": str(stored.amount),
                            "derived_amount": str(entry.amount),
                        }
                    )
                continue
            if any(row.status == EntryStatus.ROLLED_BACK for row in rows):
                # Explicitly rolled back keys are never re-inserted
                continue
            to_insert.append(entry)

        if conflicts:
            raise ConflictError(
                f"{len(conflicts)} active entries disagree with the derivation",
                "writer.apply",
                {"event_id": event.event_id, "conflicts": conflicts},
            )

        if not to_insert:
            return ApplyResult(status="noop", event_id=event.event_id)

        rows = await entry_repo.bulk_create(
            [dict(entry.to_row(), status=EntryStatus.ACTIVE, created_at=now) for entry in to_insert]
        )
        await AggregateMutator(session).add_entries(rows, now)
        return ApplyResult(status="applied", event_id=event.event_id, inserted=to_insert)

    async def record_failure(self, error: LedgerError, event: PurchaseEvent | None = None) -> None:
        """
        Dead-letter a failure in its own transaction.

        Args:
            error: Failure to record
            event: Event involved, if any
        """
        payload = {"error": error.to_payload()}
        if event is not None:
            payload["event"] = event.model_dump(mode="json")
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    await LedgerDeadLetterRepository(session).record(
                        kind=str(error.kind),
                        operation=error.operation,
                        reason=error.message,
                        event_id=event.event_id if event is not None else error.ids.get("event_id"),
                        payload=payload,
                        retry_safe=error.retry_safe,
                    )
        except Exception as e:
            logger.error(
                f"Failed to dead-letter {error.kind} error: {e}",
                extra={"operation": error.operation, **error.ids},
                exc_info=True,
            )
