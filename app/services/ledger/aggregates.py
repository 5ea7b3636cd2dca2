"""
Aggregate maintenance.

Applies entry insertions and status transitions to beneficiary aggregates
and rebuilds aggregates from active entries. Always runs inside the
caller's transaction while the caller holds the aggregate locks.
"""

from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal
from typing import Any

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from app.config.business_constants import GENERATIONS
from app.repositories.aggregate_repository import (
    AggregateReferredRepository,
    BeneficiaryAggregateRepository,
)


AggregateKey = tuple[str, str]


def aggregate_lock_key(beneficiary_id: str, currency: str) -> str:
    """Lock key serializing writes to one aggregate."""
    return f"aggregate:{beneficiary_id}:{currency}"


def expected_aggregate(entries: Iterable[Any]) -> tuple[dict[str, Any], dict[tuple[int, str], int]]:
    """
    Compute aggregate values from active entries.

    Args:
        entries: Active entries of one beneficiary in one currency

    Returns:
        Tuple of (column values, seen-referreds counts)
    """
    earnings = {g: Decimal("0") for g in GENERATIONS}
    referred: dict[tuple[int, str], int] = defaultdict(int)
    for entry in entries:
        earnings[entry.generation] += Decimal(entry.amount)
        referred[(entry.generation, entry.referred_id)] += 1

    counts = {g: 0 for g in GENERATIONS}
    for generation, _ in referred:
        counts[generation] += 1

    values: dict[str, Any] = {
        "total_earnings": sum(earnings.values(), Decimal("0")),
        "direct_referral_count": counts[1],
    }
    for g in GENERATIONS:
        values[f"generation_{g}_count"] = counts[g]
        values[f"generation_{g}_earnings"] = earnings[g]
    return values, dict(referred)


def _aggregate_values(aggregate: Any) -> dict[str, Any]:
    values: dict[str, Any] = {
        "total_earnings": Decimal(aggregate.total_earnings),
        "direct_referral_count": aggregate.direct_referral_count,
    }
    for g in GENERATIONS:
        values[f"generation_{g}_count"] = getattr(aggregate, f"generation_{g}_count")
        values[f"generation_{g}_earnings"] = Decimal(
            getattr(aggregate, f"generation_{g}_earnings")
        )
    return values


class AggregateMutator:
    """Keeps aggregates and the seen-referreds index in step with entries."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with the caller's transaction session."""
        self.session = session
        self.aggregate_repo = BeneficiaryAggregateRepository(session)
        self.referred_repo = AggregateReferredRepository(session)

    @staticmethod
    def _group(entries: Iterable[Any]) -> dict[AggregateKey, list[Any]]:
        grouped: dict[AggregateKey, list[Any]] = defaultdict(list)
        for entry in entries:
            grouped[(entry.beneficiary_id, entry.currency)].append(entry)
        return dict(sorted(grouped.items()))

    async def add_entries(self, entries: Iterable[Any], at: datetime) -> dict[AggregateKey, int]:
        """
        Add newly inserted active entries to their aggregates.

        Args:
            entries: Entries just inserted
            at: Update time

        Returns:
            New version per touched aggregate
        """
        versions: dict[AggregateKey, int] = {}
        for (beneficiary_id, currency), group in self._group(entries).items():
            earnings_delta: dict[int, Decimal] = defaultdict(lambda: Decimal("0"))
            count_delta: dict[int, int] = defaultdict(int)
            for entry in group:
                earnings_delta[entry.generation] += Decimal(entry.amount)
                newly_seen = await self.referred_repo.add_entry(
                    beneficiary_id, currency, entry.generation, entry.referred_id
                )
                if newly_seen:
                    count_delta[entry.generation] += 1

            aggregate = await self.aggregate_repo.get_or_create(beneficiary_id, currency)
            versions[(beneficiary_id, currency)] = await self.aggregate_repo.apply_delta(
                beneficiary_id,
                currency,
                aggregate.version,
                dict(earnings_delta),
                dict(count_delta),
                at,
            )
        return versions

    async def remove_entries(self, entries: Iterable[Any], at: datetime) -> dict[AggregateKey, int]:
        """
        Reverse the contribution of entries leaving the active state.

        Args:
            entries: Entries just moved to duplicate or rolled_back
            at: Update time

        Returns:
            New version per touched aggregate
        """
        versions: dict[AggregateKey, int] = {}
        for (beneficiary_id, currency), group in self._group(entries).items():
            earnings_delta: dict[int, Decimal] = defaultdict(lambda: Decimal("0"))
            count_delta: dict[int, int] = defaultdict(int)
            for entry in group:
                earnings_delta[entry.generation] -= Decimal(entry.amount)
                gone = await self.referred_repo.remove_entry(
                    beneficiary_id, currency, entry.generation, entry.referred_id
                )
                if gone:
                    count_delta[entry.generation] -= 1

            aggregate = await self.aggregate_repo.get_or_create(beneficiary_id, currency)
            versions[(beneficiary_id, currency)] = await self.aggregate_repo.apply_delta(
                beneficiary_id,
                currency,
                aggregate.version,
                dict(earnings_delta),
                dict(count_delta),
                at,
            )
        return versions

    async def rebuild(
        self,
        beneficiary_id: str,
        currency: str,
        active_entries: list[Any],
        at: datetime,
    ) -> dict[str, Any] | None:
        """
        Recompute one aggregate from its active entries.

        Writes only when the stored aggregate or index differs.

        Args:
            beneficiary_id: Beneficiary participant ID
            currency: Aggregate currency
            active_entries: All active entries of the aggregate
            at: Update time

        Returns:
            Drift details ({"before", "after", "version"}) or None if consistent
        """
        expected, expected_index = expected_aggregate(active_entries)
        aggregate = await self.aggregate_repo.get_aggregate(beneficiary_id, currency)
        stored_index = await self.referred_repo.get_counts(beneficiary_id, currency)

        if aggregate is None:
            if not active_entries and not stored_index:
                return None
            aggregate = await self.aggregate_repo.get_or_create(beneficiary_id, currency)

        before = _aggregate_values(aggregate)
        values_drift = before != expected
        index_drift = stored_index != expected_index
        if not values_drift and not index_drift:
            return None

        version = aggregate.version
        if values_drift:
            version = await self.aggregate_repo.overwrite(
                beneficiary_id, currency, aggregate.version, expected, at
            )
        if index_drift:
            await self.referred_repo.replace_all(beneficiary_id, currency, expected_index)

        logger.warning(
            "Aggregate drift repaired",
            extra={
                "beneficiary_id": beneficiary_id,
                "currency": currency,
                "values_drift": values_drift,
                "index_drift": index_drift,
            },
        )
        return {
            "before": {k: str(v) for k, v in before.items()},
            "after": {k: str(v) for k, v in expected.items()},
            "index_repaired": index_drift,
            "version": version,
        }
