"""
Participant model.

Referral participants as owned by the host platform. The ledger reads
them; the only write path is the audited admin action that clears a
broken referrer handle.
"""

from datetime import UTC, datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base
from app.models.enums import ParticipantStatus


class Participant(Base):
    """
    Participant entity.

    Attributes:
        id: Opaque participant ID from the host identity store
        handle: Public referral handle (unique, immutable once set)
        referrer_handle: Handle of the participant who referred this one
        status: active, inactive or banned
        created_at: Creation timestamp
        updated_at: Last update timestamp
    """

    __tablename__ = "participants"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    handle: Mapped[str | None] = mapped_column(
        String(50), nullable=True, unique=True, index=True
    )

    # Raw value from the host system; may be malformed
    referrer_handle: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default=ParticipantStatus.ACTIVE,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
    )

    @property
    def is_active(self) -> bool:
        """Whether commissions may be paid to this participant."""
        return self.status == ParticipantStatus.ACTIVE

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<Participant(id={self.id!r}, handle={self.handle!r}, "
            f"referrer_handle={self.referrer_handle!r}, status={self.status})>"
        )
