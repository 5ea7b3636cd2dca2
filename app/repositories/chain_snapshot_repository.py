"""
ChainSnapshot repository.

Data access layer for per-event chain snapshots.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.chain_snapshot import ChainSnapshotLink
from app.repositories.base import BaseRepository


class ChainSnapshotRepository(BaseRepository[ChainSnapshotLink]):
    """Chain snapshot repository."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize chain snapshot repository."""
        super().__init__(ChainSnapshotLink, session)

    async def get_for_event(self, event_id: str) -> list[ChainSnapshotLink]:
        """
        Get the stored chain for an event.

        Args:
            event_id: Event ID

        Returns:
            Links ordered by generation (empty if never captured)
        """
        stmt = (
            select(ChainSnapshotLink)
            .where(ChainSnapshotLink.event_id == event_id)
            .order_by(ChainSnapshotLink.generation)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
