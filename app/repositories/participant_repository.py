"""
Participant repository.

Data access layer for Participant model.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.participant import Participant
from app.repositories.base import BaseRepository


class ParticipantRepository(BaseRepository[Participant]):
    """Participant repository with specific queries."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize participant repository."""
        super().__init__(Participant, session)

    async def get_by_handle(self, handle: str) -> Participant | None:
        """
        Get participant by referral handle.

        Args:
            handle: Exact handle (already validated)

        Returns:
            Participant or None
        """
        return await self.get_by(handle=handle)

    async def find_with_referrer_batch(
        self, after_id: str | None, limit: int
    ) -> list[Participant]:
        """
        Page through participants that carry a referrer handle.

        Keyset pagination on id keeps memory flat on large tables.

        Args:
            after_id: Last id of the previous batch (None for the first)
            limit: Batch size

        Returns:
            Participants ordered by id
        """
        stmt = (
            select(Participant)
            .where(Participant.referrer_handle.is_not(None))
            .order_by(Participant.id)
            .limit(limit)
        )
        if after_id is not None:
            stmt = stmt.where(Participant.id > after_id)

        result = await self.session.execute(stmt)
        return list(result.scalars().all())
