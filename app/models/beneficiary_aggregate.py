"""
BeneficiaryAggregate model.

Derived per-beneficiary, per-currency commission summary. Cache-like:
always rebuildable from active commission entries. Mutated only by the
ledger writer, rollback and the reconciler under the aggregate lock.
"""

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base
from app.models.types import MoneyType


class BeneficiaryAggregate(Base):
    """
    BeneficiaryAggregate entity.

    Attributes:
        beneficiary_id: Participant receiving commissions
        currency: Aggregates never mix currencies
        total_earnings: Sum of active entry amounts
        generation_N_count: Distinct referred participants at generation N
        generation_N_earnings: Sum of active entry amounts at generation N
        direct_referral_count: Mirrors generation_1_count
        version: Bumped on every committed change
    """

    __tablename__ = "beneficiary_aggregates"

    beneficiary_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    currency: Mapped[str] = mapped_column(String(8), primary_key=True)

    total_earnings: Mapped[Decimal] = mapped_column(
        MoneyType, default=Decimal("0"), nullable=False
    )

    generation_1_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    generation_1_earnings: Mapped[Decimal] = mapped_column(
        MoneyType, default=Decimal("0"), nullable=False
    )
    generation_2_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    generation_2_earnings: Mapped[Decimal] = mapped_column(
        MoneyType, default=Decimal("0"), nullable=False
    )
    generation_3_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    generation_3_earnings: Mapped[Decimal] = mapped_column(
        MoneyType, default=Decimal("0"), nullable=False
    )

    direct_referral_count: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )

    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<BeneficiaryAggregate(beneficiary_id={self.beneficiary_id!r}, "
            f"currency={self.currency}, total={self.total_earnings}, "
            f"version={self.version})>"
        )


class AggregateReferred(Base):
    """
    Seen-referreds index.

    One row per (beneficiary, currency, generation, referred) with at
    least one active entry; drives the distinct referred counts.
    """

    __tablename__ = "aggregate_referreds"

    beneficiary_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    currency: Mapped[str] = mapped_column(String(8), primary_key=True)
    generation: Mapped[int] = mapped_column(Integer, primary_key=True)
    referred_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    active_entry_count: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
