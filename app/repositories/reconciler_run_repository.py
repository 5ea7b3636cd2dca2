"""
ReconcilerRun repository.

Data access layer for the reconciliation journal.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.reconciler_run import ReconcilerRun
from app.repositories.base import BaseRepository


class ReconcilerRunRepository(BaseRepository[ReconcilerRun]):
    """Reconciler run repository."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize reconciler run repository."""
        super().__init__(ReconcilerRun, session)

    async def get_recent(self, limit: int = 20) -> list[ReconcilerRun]:
        """Most recent runs first."""
        stmt = (
            select(ReconcilerRun)
            .order_by(ReconcilerRun.started_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
