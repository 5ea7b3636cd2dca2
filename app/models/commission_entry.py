"""
CommissionEntry model.

Append-only commission ledger. Amounts never change; status moves from
active to duplicate or rolled_back exactly once.
"""

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base
from app.models.enums import EntryStatus
from app.models.types import MoneyType, RateFractionType


ACTIVE_ENTRY_PREDICATE = text("status = 'active'")


class CommissionEntry(Base):
    """
    CommissionEntry entity.

    Attributes:
        id: Entry ID
        event_id: Source purchase event
        generation: 1, 2 or 3
        beneficiary_id: Ancestor receiving the commission
        referred_id: Purchaser that generated the commission
        amount: Commission amount (rounded per currency scale)
        currency: Same as the source event
        rate_applied: Fraction applied (0.15 = 15%)
        status: active, duplicate or rolled_back
        status_reason: Why the status left active
        created_at: Insertion time
        status_changed_at: When the status left active
    """

    __tablename__ = "commission_entries"
    __table_args__ = (
        CheckConstraint("generation BETWEEN 1 AND 3", name="generation_range"),
        CheckConstraint("amount >= 0", name="amount_non_negative"),
        # At most one active entry per (event, generation, beneficiary)
        Index(
            "uq_commission_entries_active",
            "event_id",
            "generation",
            "beneficiary_id",
            unique=True,
            postgresql_where=ACTIVE_ENTRY_PREDICATE,
            sqlite_where=ACTIVE_ENTRY_PREDICATE,
        ),
        Index(
            "ix_commission_entries_beneficiary_status",
            "beneficiary_id",
            "currency",
            "status",
        ),
    )

    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )

    event_id: Mapped[str] = mapped_column(
        String(128),
        ForeignKey("purchase_events.event_id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    generation: Mapped[int] = mapped_column(Integer, nullable=False)
    beneficiary_id: Mapped[str] = mapped_column(String(64), nullable=False)
    referred_id: Mapped[str] = mapped_column(String(64), nullable=False)

    amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    rate_applied: Mapped[Decimal] = mapped_column(
        RateFractionType, nullable=False
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default=EntryStatus.ACTIVE,
        nullable=False,
        index=True,
    )
    status_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
    status_changed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    @property
    def key(self) -> tuple[str, int, str]:
        """Uniqueness key among active entries."""
        return (self.event_id, self.generation, self.beneficiary_id)

    @property
    def is_active(self) -> bool:
        """Whether the entry contributes to aggregates."""
        return self.status == EntryStatus.ACTIVE

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<CommissionEntry(id={self.id}, event_id={self.event_id!r}, "
            f"generation={self.generation}, beneficiary_id={self.beneficiary_id!r}, "
            f"amount={self.amount} {self.currency}, status={self.status})>"
        )
