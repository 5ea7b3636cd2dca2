"""
PurchaseEvent repository.

Data access layer for the events log.
"""

from datetime import datetime

from sqlalchemy import select, union, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.chain_snapshot import ChainSnapshotLink
from app.models.commission_entry import CommissionEntry
from app.models.purchase_event import PurchaseEventRecord
from app.repositories.base import BaseRepository


class PurchaseEventRepository(BaseRepository[PurchaseEventRecord]):
    """Events log repository."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize purchase event repository."""
        super().__init__(PurchaseEventRecord, session)

    async def find_batch(
        self, after_event_id: str | None, limit: int
    ) -> list[PurchaseEventRecord]:
        """
        Page through the events log in event_id order.

        Args:
            after_event_id: Last event_id of the previous batch
            limit: Batch size

        Returns:
            Events ordered by event_id
        """
        stmt = (
            select(PurchaseEventRecord)
            .order_by(PurchaseEventRecord.event_id)
            .limit(limit)
        )
        if after_event_id is not None:
            stmt = stmt.where(PurchaseEventRecord.event_id > after_event_id)

        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def find_event_ids_for_beneficiary(self, beneficiary_id: str) -> list[str]:
        """
        Events whose chain or entries involve a beneficiary.

        Args:
            beneficiary_id: Beneficiary participant ID

        Returns:
            Sorted distinct event IDs
        """
        stmt = union(
            select(ChainSnapshotLink.event_id).where(
                ChainSnapshotLink.beneficiary_id == beneficiary_id
            ),
            select(CommissionEntry.event_id).where(
                CommissionEntry.beneficiary_id == beneficiary_id
            ),
        )
        result = await self.session.execute(stmt)
        return sorted(row[0] for row in result.all())

    async def mark_rolled_back(
        self, event_id: str, reason: str, at: datetime
    ) -> bool:
        """
        Set the rollback marker once.

        Args:
            event_id: Event ID
            reason: Rollback reason
            at: Rollback time

        Returns:
            True if the marker was set by this call
        """
        stmt = (
            update(PurchaseEventRecord)
            .where(
                PurchaseEventRecord.event_id == event_id,
                PurchaseEventRecord.rolled_back_at.is_(None),
            )
            .values(rolled_back_at=at, rollback_reason=reason)
        )
        result = await self.session.execute(stmt)
        return result.rowcount > 0

    async def has_events_since(self, moment: datetime) -> bool:
        """Whether any event occurred at or after a moment."""
        stmt = (
            select(PurchaseEventRecord.event_id)
            .where(PurchaseEventRecord.occurred_at >= moment)
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.first() is not None
