"""
Database configuration.

Async engine and session maker shared by the application process.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.config.settings import settings


def create_engine(database_url: str | None = None, echo: bool | None = None) -> AsyncEngine:
    """Create async engine for the configured database."""
    url = database_url or settings.database_url
    connect_args = {}
    if url.startswith("sqlite"):
        # Writers wait for the file lock instead of failing immediately
        connect_args["timeout"] = 30
    return create_async_engine(
        url,
        echo=settings.database_echo if echo is None else echo,
        pool_pre_ping=not url.startswith("sqlite"),
        connect_args=connect_args,
    )


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create session maker bound to engine."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


async_engine = create_engine()
async_session_maker = create_session_maker(async_engine)
