"""
AdminAuditLog repository.

Data access layer for admin action auditing.
"""

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.admin_audit_log import AdminAuditLog
from app.repositories.base import BaseRepository


class AdminAuditLogRepository(BaseRepository[AdminAuditLog]):
    """Admin audit log repository."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize admin audit log repository."""
        super().__init__(AdminAuditLog, session)

    async def log_action(
        self,
        action: str,
        actor: str,
        target: str,
        details: dict[str, Any] | None = None,
    ) -> AdminAuditLog:
        """
        Record an admin action.

        Args:
            action: Action name
            actor: Admin who performed it
            target: Affected object (event_id, participant_id, ...)
            details: Extra context

        Returns:
            Created audit row
        """
        return await self.create(
            action=action, actor=actor, target=target, details=details or {}
        )

    async def find_for_target(self, target: str) -> list[AdminAuditLog]:
        """Audit trail of one target, oldest first."""
        stmt = (
            select(AdminAuditLog)
            .where(AdminAuditLog.target == target)
            .order_by(AdminAuditLog.created_at, AdminAuditLog.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
