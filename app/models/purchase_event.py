"""
PurchaseEventRecord model.

The events log: every accepted completed-purchase event, keyed by event_id.
Immutable once accepted except for the rollback marker.
"""

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base
from app.models.types import MoneyType


class PurchaseEventRecord(Base):
    """
    Accepted purchase event.

    Attributes:
        event_id: Globally unique event ID
        purchaser_id: Participant who purchased
        amount: Purchase amount (>= 0)
        currency: NGN or USDT
        product_kind: share or cofounder (metadata only)
        occurred_at: When the purchase completed
        source_ref: Stable external reference (payment/transaction ID)
        accepted_at: When intake accepted the event
        chain_captured_at: When the chain snapshot was stored (set even for
            empty chains, so later participant changes never rewrite history)
        rolled_back_at: Set by an explicit admin rollback
        rollback_reason: Reason given for the rollback
    """

    __tablename__ = "purchase_events"
    __table_args__ = (
        CheckConstraint("amount >= 0", name="amount_non_negative"),
        Index("ix_purchase_events_purchaser_occurred", "purchaser_id", "occurred_at"),
    )

    event_id: Mapped[str] = mapped_column(String(128), primary_key=True)

    purchaser_id: Mapped[str] = mapped_column(String(64), nullable=False)

    amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    product_kind: Mapped[str] = mapped_column(String(20), nullable=False)

    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    source_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)

    accepted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )

    chain_captured_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    rolled_back_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    rollback_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def is_rolled_back(self) -> bool:
        """Whether an admin rolled this event back."""
        return self.rolled_back_at is not None

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<PurchaseEventRecord(event_id={self.event_id!r}, "
            f"purchaser_id={self.purchaser_id!r}, amount={self.amount} {self.currency})>"
        )
