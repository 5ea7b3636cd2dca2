"""
ReconcilerRun model.

Append-only journal of reconciliation runs: what was found, what was done.
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base
from app.models.enums import ReconcilerRunStatus


class ReconcilerRun(Base):
    """Journal record of one reconciler run."""

    __tablename__ = "reconciler_runs"

    run_id: Mapped[str] = mapped_column(String(36), primary_key=True)

    # all | beneficiary:<id> | event:<id>
    scope: Mapped[str] = mapped_column(String(200), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default=ReconcilerRunStatus.RUNNING, nullable=False
    )

    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
        index=True,
    )
    finished_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    findings: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, default=list, nullable=False
    )
    actions: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, default=list, nullable=False
    )

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<ReconcilerRun(run_id={self.run_id!r}, scope={self.scope!r}, "
            f"status={self.status}, findings={len(self.findings or [])}, "
            f"actions={len(self.actions or [])})>"
        )
