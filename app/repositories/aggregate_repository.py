"""
BeneficiaryAggregate repository.

Data access layer for derived aggregates and the seen-referreds index.
Every write checks the expected version so a lost update surfaces as a
transient error instead of silently clobbering a concurrent writer.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.beneficiary_aggregate import AggregateReferred, BeneficiaryAggregate
from app.repositories.base import BaseRepository
from app.utils.exceptions import TransientStoreError


class BeneficiaryAggregateRepository(BaseRepository[BeneficiaryAggregate]):
    """Aggregate repository with versioned writes."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize aggregate repository."""
        super().__init__(BeneficiaryAggregate, session)

    async def get_aggregate(
        self, beneficiary_id: str, currency: str
    ) -> BeneficiaryAggregate | None:
        """Get aggregate for (beneficiary, currency), refreshed from the database."""
        return await self.session.get(
            BeneficiaryAggregate, (beneficiary_id, currency), populate_existing=True
        )

    async def get_or_create(
        self, beneficiary_id: str, currency: str
    ) -> BeneficiaryAggregate:
        """
        Get aggregate, creating a zeroed one on first use.

        Callers hold the aggregate lock, so the insert cannot race within
        one deployment; a cross-process race fails the flush and retries.
        """
        aggregate = await self.get_aggregate(beneficiary_id, currency)
        if aggregate is not None:
            return aggregate
        return await self.create(
            beneficiary_id=beneficiary_id,
            currency=currency,
            total_earnings=Decimal("0"),
            generation_1_count=0,
            generation_1_earnings=Decimal("0"),
            generation_2_count=0,
            generation_2_earnings=Decimal("0"),
            generation_3_count=0,
            generation_3_earnings=Decimal("0"),
            direct_referral_count=0,
            version=0,
        )

    async def apply_delta(
        self,
        beneficiary_id: str,
        currency: str,
        expected_version: int,
        earnings_delta: dict[int, Decimal],
        count_delta: dict[int, int],
        at: datetime,
    ) -> int:
        """
        Atomically add deltas and bump the version.

        Args:
            beneficiary_id: Beneficiary participant ID
            currency: Aggregate currency
            expected_version: Version read by the caller
            earnings_delta: Generation -> earnings change
            count_delta: Generation -> distinct referred count change
            at: Update time

        Returns:
            New version

        Raises:
            TransientStoreError: Version moved underneath the caller
        """
        agg = BeneficiaryAggregate
        total_delta = sum(earnings_delta.values(), Decimal("0"))
        values: dict[str, Any] = {
            "total_earnings": agg.total_earnings + total_delta,
            "version": agg.version + 1,
            "updated_at": at,
        }
        for generation in (1, 2, 3):
            earnings_col = getattr(agg, f"generation_{generation}_earnings")
            count_col = getattr(agg, f"generation_{generation}_count")
            if earnings_delta.get(generation):
                values[earnings_col.key] = earnings_col + earnings_delta[generation]
            if count_delta.get(generation):
                values[count_col.key] = count_col + count_delta[generation]
        if count_delta.get(1):
            # Mirrors the generation 1 count
            values["direct_referral_count"] = agg.generation_1_count + count_delta[1]

        # R9-2: atomic update with optimistic version check
        stmt = (
            update(agg)
            .where(
                agg.beneficiary_id == beneficiary_id,
                agg.currency == currency,
                agg.version == expected_version,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount == 0:
            raise TransientStoreError(
                "Aggregate version changed concurrently",
                "aggregates.apply_delta",
                {"beneficiary_id": beneficiary_id, "currency": currency},
            )
        return expected_version + 1

    async def overwrite(
        self,
        beneficiary_id: str,
        currency: str,
        expected_version: int,
        values: dict[str, Any],
        at: datetime,
    ) -> int:
        """
        Replace aggregate values wholesale (reconciler rebuild).

        Raises:
            TransientStoreError: Version moved underneath the caller
        """
        agg = BeneficiaryAggregate
        stmt = (
            update(agg)
            .where(
                agg.beneficiary_id == beneficiary_id,
                agg.currency == currency,
                agg.version == expected_version,
            )
            .values(**values, version=expected_version + 1, updated_at=at)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount == 0:
            raise TransientStoreError(
                "Aggregate version changed concurrently",
                "aggregates.overwrite",
                {"beneficiary_id": beneficiary_id, "currency": currency},
            )
        return expected_version + 1

    async def find_for_beneficiary(self, beneficiary_id: str) -> list[BeneficiaryAggregate]:
        """All currency aggregates of a beneficiary."""
        stmt = (
            select(BeneficiaryAggregate)
            .where(BeneficiaryAggregate.beneficiary_id == beneficiary_id)
            .order_by(BeneficiaryAggregate.currency)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def find_keys(self) -> list[tuple[str, str]]:
        """All (beneficiary_id, currency) aggregate keys."""
        stmt = select(
            BeneficiaryAggregate.beneficiary_id, BeneficiaryAggregate.currency
        )
        result = await self.session.execute(stmt)
        return sorted((row[0], row[1]) for row in result.all())

    async def find_top(self, currency: str, limit: int) -> list[BeneficiaryAggregate]:
        """Aggregates with the highest total earnings in a currency."""
        stmt = (
            select(BeneficiaryAggregate)
            .where(
                BeneficiaryAggregate.currency == currency,
                BeneficiaryAggregate.total_earnings > 0,
            )
            .order_by(
                BeneficiaryAggregate.total_earnings.desc(),
                BeneficiaryAggregate.beneficiary_id,
            )
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class AggregateReferredRepository(BaseRepository[AggregateReferred]):
    """Seen-referreds index backing the distinct referred counts."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize seen-referreds repository."""
        super().__init__(AggregateReferred, session)

    async def add_entry(
        self, beneficiary_id: str, currency: str, generation: int, referred_id: str
    ) -> bool:
        """
        Record one more active entry for a referred participant.

        Returns:
            True if the referred participant is new at this generation
        """
        key = (beneficiary_id, currency, generation, referred_id)
        row = await self.get_by_id(key)
        if row is None:
            await self.create(
                beneficiary_id=beneficiary_id,
                currency=currency,
                generation=generation,
                referred_id=referred_id,
                active_entry_count=1,
            )
            return True
        row.active_entry_count += 1
        await self.session.flush()
        return False

    async def remove_entry(
        self, beneficiary_id: str, currency: str, generation: int, referred_id: str
    ) -> bool:
        """
        Record one fewer active entry for a referred participant.

        Returns:
            True if the referred participant has no active entries left
        """
        key = (beneficiary_id, currency, generation, referred_id)
        row = await self.get_by_id(key)
        if row is None:
            # Index already out of step; the reconciler rebuilds it
            return False
        row.active_entry_count -= 1
        if row.active_entry_count <= 0:
            await self.session.delete(row)
            await self.session.flush()
            return True
        await self.session.flush()
        return False

    async def get_counts(
        self, beneficiary_id: str, currency: str
    ) -> dict[tuple[int, str], int]:
        """Current index rows as {(generation, referred_id): active_entry_count}."""
        stmt = select(AggregateReferred).where(
            AggregateReferred.beneficiary_id == beneficiary_id,
            AggregateReferred.currency == currency,
        )
        result = await self.session.execute(stmt)
        return {
            (row.generation, row.referred_id): row.active_entry_count
            for row in result.scalars().all()
        }

    async def replace_all(
        self,
        beneficiary_id: str,
        currency: str,
        counts: dict[tuple[int, str], int],
    ) -> None:
        """Replace the index rows of one aggregate."""
        await self.session.execute(
            delete(AggregateReferred).where(
                AggregateReferred.beneficiary_id == beneficiary_id,
                AggregateReferred.currency == currency,
            ).execution_options(synchronize_session=False)
        )
        # Drop identities of the deleted rows so re-adding the same keys is clean
        for obj in list(self.session.identity_map.values()):
            if (
                isinstance(obj, AggregateReferred)
                and obj.beneficiary_id == beneficiary_id
                and obj.currency == currency
            ):
                self.session.expunge(obj)
        await self.bulk_create(
            [
                {
                    "beneficiary_id": beneficiary_id,
                    "currency": currency,
                    "generation": generation,
                    "referred_id": referred_id,
                    "active_entry_count": count,
                }
                for (generation, referred_id), count in sorted(counts.items())
                if count > 0
            ]
        )
