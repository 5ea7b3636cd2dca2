"""
LedgerDeadLetter repository.

Data access layer for the dead-letter triage table.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.dead_letter import LedgerDeadLetter
from app.repositories.base import BaseRepository


class LedgerDeadLetterRepository(BaseRepository[LedgerDeadLetter]):
    """Dead letter repository."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize dead letter repository."""
        super().__init__(LedgerDeadLetter, session)

    async def record(
        self,
        kind: str,
        operation: str,
        reason: str,
        event_id: str | None = None,
        payload: dict[str, Any] | None = None,
        retry_safe: bool = False,
    ) -> LedgerDeadLetter:
        """
        Persist a dead letter.

        Args:
            kind: Error kind
            operation: Operation that failed
            reason: Human-readable reason
            event_id: Related event, if any
            payload: Event data and error details
            retry_safe: Whether resubmitting is safe

        Returns:
            Created dead letter
        """
        return await self.create(
            kind=kind,
            operation=operation,
            reason=reason,
            event_id=event_id,
            payload=payload or {},
            retry_safe=retry_safe,
        )

    async def find_filtered(
        self,
        kind: str | None = None,
        unresolved_only: bool = True,
        limit: int = 100,
    ) -> list[LedgerDeadLetter]:
        """
        List dead letters, newest first.

        Args:
            kind: Optional kind filter
            unresolved_only: Skip resolved rows
            limit: Max rows

        Returns:
            Dead letters
        """
        stmt = select(LedgerDeadLetter)
        if kind is not None:
            stmt = stmt.where(LedgerDeadLetter.kind == kind)
        if unresolved_only:
            stmt = stmt.where(LedgerDeadLetter.resolved_at.is_(None))
        stmt = stmt.order_by(
            LedgerDeadLetter.created_at.desc(), LedgerDeadLetter.id.desc()
        ).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def resolve(self, dead_letter_id: int, actor: str, at: datetime) -> bool:
        """
        Mark a dead letter resolved once.

        Returns:
            True if this call resolved it
        """
        stmt = (
            update(LedgerDeadLetter)
            .where(
                LedgerDeadLetter.id == dead_letter_id,
                LedgerDeadLetter.resolved_at.is_(None),
            )
            .values(resolved_at=at, resolved_by=actor)
        )
        result = await self.session.execute(stmt)
        return result.rowcount > 0

    async def has_unresolved(self, event_id: str, kind: str, operation: str) -> bool:
        """Whether an open dead letter already covers this failure."""
        return await self.exists(
            event_id=event_id, kind=kind, operation=operation, resolved_at=None
        )
