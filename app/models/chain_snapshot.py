"""
ChainSnapshotLink model.

The resolved ancestor chain captured for each event, one row per
generation. Basis for audit and for reconciler re-derivation.
"""

from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base


class ChainSnapshotLink(Base):
    """One (generation, beneficiary) link of an event's chain snapshot."""

    __tablename__ = "chain_snapshots"

    event_id: Mapped[str] = mapped_column(
        String(128),
        ForeignKey("purchase_events.event_id", ondelete="CASCADE"),
        primary_key=True,
    )
    generation: Mapped[int] = mapped_column(Integer, primary_key=True)

    beneficiary_id: Mapped[str] = mapped_column(
        String(64), nullable=False, index=True
    )

    # Inactive/banned ancestors are recorded but earn nothing
    suppressed: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    captured_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<ChainSnapshotLink(event_id={self.event_id!r}, "
            f"generation={self.generation}, beneficiary_id={self.beneficiary_id!r}, "
            f"suppressed={self.suppressed})>"
        )
