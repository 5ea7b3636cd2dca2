"""Shared database and ledger setup for tasks."""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.config.settings import settings
from app.services.ledger import CommissionLedgerService, LedgerConfig
from app.utils.distributed_lock import DistributedLock


def create_task_engine():
    """Create an engine for use inside a task's event loop."""
    return create_async_engine(
        settings.database_url,
        echo=False,
        poolclass=NullPool,
    )


def create_task_session_maker(engine=None):
    """Create a session maker for tasks."""
    if engine is None:
        engine = create_task_engine()
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


def create_task_ledger(session_maker, redis_client=None) -> CommissionLedgerService:
    """
    Build a ledger service for a task.

    Args:
        session_maker: Task-local session maker
        redis_client: Redis client backing the aggregate locks

    Returns:
        CommissionLedgerService configured from settings
    """
    return CommissionLedgerService(
        session_maker,
        config=LedgerConfig.from_settings(settings),
        lock=DistributedLock(redis_client=redis_client),
    )
