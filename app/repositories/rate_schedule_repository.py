"""
RateSchedule repository.

Data access layer for the append-only rate schedule history.
"""

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.rate_schedule import RateSchedule
from app.repositories.base import BaseRepository


class RateScheduleRepository(BaseRepository[RateSchedule]):
    """RateSchedule repository."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize rate schedule repository."""
        super().__init__(RateSchedule, session)

    async def get_effective_at(self, moment: datetime) -> RateSchedule | None:
        """
        Get the schedule in force at a moment.

        Args:
            moment: Event time

        Returns:
            Latest schedule with effective_from <= moment, or None
        """
        stmt = (
            select(RateSchedule)
            .where(RateSchedule.effective_from <= moment)
            .order_by(RateSchedule.effective_from.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_latest(self) -> RateSchedule | None:
        """Get the most recently effective schedule."""
        stmt = (
            select(RateSchedule)
            .order_by(RateSchedule.effective_from.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_history(self) -> list[RateSchedule]:
        """All schedules, oldest first."""
        stmt = select(RateSchedule).order_by(RateSchedule.effective_from)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
