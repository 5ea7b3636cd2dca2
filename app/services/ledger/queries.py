"""
Ledger read operations.

Every read returns committed state only; nothing here writes.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config.business_constants import GENERATIONS
from app.config.operational_constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from app.models.commission_entry import CommissionEntry
from app.models.dead_letter import LedgerDeadLetter
from app.models.reconciler_run import ReconcilerRun
from app.repositories.aggregate_repository import BeneficiaryAggregateRepository
from app.repositories.commission_entry_repository import CommissionEntryRepository
from app.repositories.dead_letter_repository import LedgerDeadLetterRepository
from app.repositories.reconciler_run_repository import ReconcilerRunRepository
from app.services.ledger.types import AggregateSnapshot, GenerationTotals, Page
from app.utils.exceptions import ValidationError
from app.validators.common import validate_currency


def _currency(value: Any, operation: str) -> str:
    is_valid, currency, error = validate_currency(value)
    if not is_valid:
        raise ValidationError(error or "Invalid currency", operation, {"currency": str(value)})
    return currency


class LedgerQueries:
    """Read side of the commission ledger."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        """Initialize with a session factory."""
        self.session_maker = session_maker

    async def query_aggregate(self, beneficiary_id: str, currency: str) -> AggregateSnapshot:
        """
        Get a beneficiary's committed aggregate.

        A beneficiary without entries gets zeros and version 0.

        Args:
            beneficiary_id: Beneficiary participant ID
            currency: Aggregate currency

        Returns:
            AggregateSnapshot
        """
        currency = _currency(currency, "query.aggregate")
        async with self.session_maker() as session:
            aggregate = await BeneficiaryAggregateRepository(session).get_aggregate(
                beneficiary_id, currency
            )
        if aggregate is None:
            return AggregateSnapshot(beneficiary_id=beneficiary_id, currency=currency)
        return AggregateSnapshot.from_model(aggregate)

    async def list_entries(
        self,
        beneficiary_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
        generation: int | None = None,
        status: str | None = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Page[CommissionEntry]:
        """
        Page through a beneficiary's entries, oldest first.

        Raises:
            ValidationError: Bad page parameters or generation
        """
        ids = {"beneficiary_id": beneficiary_id}
        if page < 1:
            raise ValidationError("page must be >= 1", "query.list_entries", ids)
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValidationError(
                f"page_size must be between 1 and {MAX_PAGE_SIZE}", "query.list_entries", ids
            )
        if generation is not None and generation not in GENERATIONS:
            raise ValidationError(
                f"generation must be one of {GENERATIONS}", "query.list_entries", ids
            )

        async with self.session_maker() as session:
            items, total = await CommissionEntryRepository(session).find_page(
                beneficiary_id,
                since=since,
                until=until,
                generation=generation,
                status=status,
                page=page,
                page_size=page_size,
            )
        return Page(items=items, total=total, page=page, page_size=page_size)

    async def list_referred(
        self,
        beneficiary_id: str,
        generation: int | None = None,
        currency: str | None = None,
    ) -> dict[int, list[str]]:
        """Distinct referred participants per generation, from active entries."""
        if currency is not None:
            currency = _currency(currency, "query.list_referred")
        async with self.session_maker() as session:
            return await CommissionEntryRepository(session).get_referred_ids(
                beneficiary_id, generation, currency
            )

    async def commission_breakdown(
        self,
        currency: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> dict[int, GenerationTotals]:
        """
        Per-generation totals and counts of active entries.

        Args:
            currency: Currency to report
            since: Inclusive lower bound on entry creation
            until: Exclusive upper bound on entry creation

        Returns:
            Dict mapping generation to GenerationTotals
        """
        currency = _currency(currency, "query.commission_breakdown")
        async with self.session_maker() as session:
            breakdown = await CommissionEntryRepository(session).get_generation_breakdown(
                currency, since, until
            )
        return {
            generation: GenerationTotals(
                count=int(row["count"]), earnings=Decimal(row["total"])
            )
            for generation, row in breakdown.items()
        }

    async def top_beneficiaries(self, currency: str, limit: int = 10) -> list[AggregateSnapshot]:
        """Beneficiaries with the highest total earnings."""
        currency = _currency(currency, "query.top_beneficiaries")
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        async with self.session_maker() as session:
            rows = await BeneficiaryAggregateRepository(session).find_top(currency, limit)
        return [AggregateSnapshot.from_model(row) for row in rows]

    async def list_dead_letters(
        self, kind: str | None = None, unresolved_only: bool = True, limit: int = 100
    ) -> list[LedgerDeadLetter]:
        """Dead letters for triage, newest first."""
        async with self.session_maker() as session:
            return await LedgerDeadLetterRepository(session).find_filtered(
                kind, unresolved_only, limit
            )

    async def list_reconciler_runs(self, limit: int = 20) -> list[ReconcilerRun]:
        """Most recent reconciler runs."""
        async with self.session_maker() as session:
            return await ReconcilerRunRepository(session).get_recent(limit)
