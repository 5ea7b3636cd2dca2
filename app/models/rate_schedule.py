"""
RateSchedule model.

Append-only commission rate history. The schedule in force at a purchase's
occurred_at is the one used for its commissions.
"""

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base
from app.models.types import RatePercentType


class RateSchedule(Base):
    """
    RateSchedule entity.

    Rates are stored as percentages (15.0000 = 15%).
    """

    __tablename__ = "rate_schedules"
    __table_args__ = (
        CheckConstraint(
            "rate_generation_1 >= 0 AND rate_generation_1 <= 100",
            name="rate_generation_1_bounds",
        ),
        CheckConstraint(
            "rate_generation_2 >= 0 AND rate_generation_2 <= 100",
            name="rate_generation_2_bounds",
        ),
        CheckConstraint(
            "rate_generation_3 >= 0 AND rate_generation_3 <= 100",
            name="rate_generation_3_bounds",
        ),
    )

    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )

    rate_generation_1: Mapped[Decimal] = mapped_column(
        RatePercentType, nullable=False
    )
    rate_generation_2: Mapped[Decimal] = mapped_column(
        RatePercentType, nullable=False
    )
    rate_generation_3: Mapped[Decimal] = mapped_column(
        RatePercentType, nullable=False
    )

    effective_from: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, unique=True, index=True
    )

    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )

    def rate_percent(self, generation: int) -> Decimal:
        """Rate for a generation as percent (0 for unknown generations)."""
        return {
            1: self.rate_generation_1,
            2: self.rate_generation_2,
            3: self.rate_generation_3,
        }.get(generation, Decimal("0"))

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<RateSchedule(id={self.id}, rates={self.rate_generation_1}/"
            f"{self.rate_generation_2}/{self.rate_generation_3}, "
            f"effective_from={self.effective_from})>"
        )
