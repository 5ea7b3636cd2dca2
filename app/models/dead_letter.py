"""
LedgerDeadLetter model.

Durable sink for rejected events, conflicts and exhausted retries,
kept for human triage.
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base


class LedgerDeadLetter(Base):
    """Dead-lettered ledger failure."""

    __tablename__ = "ledger_dead_letters"

    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )

    event_id: Mapped[str | None] = mapped_column(
        String(128), nullable=True, index=True
    )

    # validation | transient | conflict | integrity | cancellation
    kind: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    operation: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)

    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON, default=dict, nullable=False
    )
    retry_safe: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<LedgerDeadLetter(id={self.id}, kind={self.kind}, "
            f"event_id={self.event_id!r}, operation={self.operation})>"
        )
