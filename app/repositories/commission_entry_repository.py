"""
CommissionEntry repository.

Data access layer for the commission ledger. Entries are inserted and
their status moved off ``active``; nothing here changes an amount.
"""

from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.commission_entry import CommissionEntry
from app.models.enums import EntryStatus
from app.repositories.base import BaseRepository


EntryKey = tuple[str, int, str]


class CommissionEntryRepository(BaseRepository[CommissionEntry]):
    """Commission entry repository with ledger queries."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize commission entry repository."""
        super().__init__(CommissionEntry, session)

    async def find_for_event(
        self, event_id: str, status: str | None = None
    ) -> list[CommissionEntry]:
        """
        Get entries of an event.

        Args:
            event_id: Event ID
            status: Optional status filter

        Returns:
            Entries ordered by generation, created_at, id
        """
        stmt = select(CommissionEntry).where(CommissionEntry.event_id == event_id)
        if status is not None:
            stmt = stmt.where(CommissionEntry.status == status)
        stmt = stmt.order_by(
            CommissionEntry.generation,
            CommissionEntry.created_at,
            CommissionEntry.id,
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def find_active_for_beneficiary(
        self, beneficiary_id: str, currency: str | None = None
    ) -> list[CommissionEntry]:
        """
        Get all active entries of a beneficiary.

        Args:
            beneficiary_id: Beneficiary participant ID
            currency: Optional currency filter

        Returns:
            Active entries ordered by id
        """
        stmt = select(CommissionEntry).where(
            CommissionEntry.beneficiary_id == beneficiary_id,
            CommissionEntry.status == EntryStatus.ACTIVE,
        )
        if currency is not None:
            stmt = stmt.where(CommissionEntry.currency == currency)
        result = await self.session.execute(stmt.order_by(CommissionEntry.id))
        return list(result.scalars().all())

    async def find_active_by_key(self, key: EntryKey) -> list[CommissionEntry]:
        """
        Get active entries sharing (event_id, generation, beneficiary_id).

        More than one row means the uniqueness guard was bypassed.

        Returns:
            Entries ordered earliest first (created_at, then id)
        """
        event_id, generation, beneficiary_id = key
        stmt = (
            select(CommissionEntry)
            .where(
                CommissionEntry.event_id == event_id,
                CommissionEntry.generation == generation,
                CommissionEntry.beneficiary_id == beneficiary_id,
                CommissionEntry.status == EntryStatus.ACTIVE,
            )
            .order_by(CommissionEntry.created_at, CommissionEntry.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def find_duplicate_keys(
        self,
        beneficiary_id: str | None = None,
        event_id: str | None = None,
    ) -> list[EntryKey]:
        """
        Find keys held by more than one active entry.

        Args:
            beneficiary_id: Restrict to one beneficiary
            event_id: Restrict to one event

        Returns:
            Sorted list of (event_id, generation, beneficiary_id)
        """
        stmt = (
            select(
                CommissionEntry.event_id,
                CommissionEntry.generation,
                CommissionEntry.beneficiary_id,
            )
            .where(CommissionEntry.status == EntryStatus.ACTIVE)
            .group_by(
                CommissionEntry.event_id,
                CommissionEntry.generation,
                CommissionEntry.beneficiary_id,
            )
            .having(func.count(CommissionEntry.id) > 1)
        )
        if beneficiary_id is not None:
            stmt = stmt.where(CommissionEntry.beneficiary_id == beneficiary_id)
        if event_id is not None:
            stmt = stmt.where(CommissionEntry.event_id == event_id)

        result = await self.session.execute(stmt)
        return sorted((row[0], row[1], row[2]) for row in result.all())

    async def mark_status(
        self,
        entry_ids: Iterable[int],
        status: str,
        reason: str,
        at: datetime,
    ) -> int:
        """
        Move active entries to a terminal status.

        Only active rows transition; rows already terminal are left alone.

        Args:
            entry_ids: Entries to transition
            status: duplicate or rolled_back
            reason: Recorded status reason
            at: Transition time

        Returns:
            Number of rows transitioned
        """
        ids = list(entry_ids)
        if not ids:
            return 0
        stmt = (
            update(CommissionEntry)
            .where(
                CommissionEntry.id.in_(ids),
                CommissionEntry.status == EntryStatus.ACTIVE,
            )
            .values(status=status, status_reason=reason, status_changed_at=at)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount

    async def find_page(
        self,
        beneficiary_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
        generation: int | None = None,
        status: str | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[CommissionEntry], int]:
        """
        Page through a beneficiary's entries.

        Args:
            beneficiary_id: Beneficiary participant ID
            since: Inclusive lower bound on created_at
            until: Exclusive upper bound on created_at
            generation: Optional generation filter
            status: Optional status filter
            page: Page number (1-indexed)
            page_size: Items per page

        Returns:
            Tuple of (items, total_count)
        """
        conditions = [CommissionEntry.beneficiary_id == beneficiary_id]
        if since is not None:
            conditions.append(CommissionEntry.created_at >= since)
        if until is not None:
            conditions.append(CommissionEntry.created_at < until)
        if generation is not None:
            conditions.append(CommissionEntry.generation == generation)
        if status is not None:
            conditions.append(CommissionEntry.status == status)

        count_stmt = select(func.count(CommissionEntry.id)).where(*conditions)
        total = (await self.session.execute(count_stmt)).scalar() or 0

        stmt = (
            select(CommissionEntry)
            .where(*conditions)
            .order_by(CommissionEntry.created_at, CommissionEntry.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all()), total

    async def get_referred_ids(
        self,
        beneficiary_id: str,
        generation: int | None = None,
        currency: str | None = None,
    ) -> dict[int, list[str]]:
        """
        Distinct referred participants per generation from active entries.

        Returns:
            Dict mapping generation to sorted referred IDs
        """
        stmt = (
            select(CommissionEntry.generation, CommissionEntry.referred_id)
            .where(
                CommissionEntry.beneficiary_id == beneficiary_id,
                CommissionEntry.status == EntryStatus.ACTIVE,
            )
            .distinct()
        )
        if generation is not None:
            stmt = stmt.where(CommissionEntry.generation == generation)
        if currency is not None:
            stmt = stmt.where(CommissionEntry.currency == currency)

        result = await self.session.execute(stmt)
        tree: dict[int, set[str]] = {}
        for row in result.all():
            tree.setdefault(row.generation, set()).add(row.referred_id)
        return {gen: sorted(ids) for gen, ids in sorted(tree.items())}

    async def get_generation_breakdown(
        self,
        currency: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> dict[int, dict[str, int | Decimal]]:
        """
        Totals and counts of active entries grouped by generation.

        Returns:
            Dict mapping generation to {"count": n, "total": Decimal}
        """
        stmt = (
            select(
                CommissionEntry.generation,
                func.count(CommissionEntry.id).label("count"),
                func.coalesce(
                    func.sum(CommissionEntry.amount), Decimal("0")
                ).label("total"),
            )
            .where(
                CommissionEntry.currency == currency,
                CommissionEntry.status == EntryStatus.ACTIVE,
            )
            .group_by(CommissionEntry.generation)
        )
        if since is not None:
            stmt = stmt.where(CommissionEntry.created_at >= since)
        if until is not None:
            stmt = stmt.where(CommissionEntry.created_at < until)

        result = await self.session.execute(stmt)
        breakdown: dict[int, dict[str, int | Decimal]] = {
            1: {"count": 0, "total": Decimal("0")},
            2: {"count": 0, "total": Decimal("0")},
            3: {"count": 0, "total": Decimal("0")},
        }
        for row in result.all():
            breakdown[row.generation] = {
                "count": row.count,
                "total": Decimal(row.total),
            }
        return breakdown

    async def find_beneficiary_keys(self) -> list[tuple[str, str]]:
        """All (beneficiary_id, currency) pairs present in the ledger."""
        stmt = select(
            CommissionEntry.beneficiary_id, CommissionEntry.currency
        ).distinct()
        result = await self.session.execute(stmt)
        return sorted((row[0], row[1]) for row in result.all())
