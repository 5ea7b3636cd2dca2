"""
Database decorators for automatic commit and rollback.

Ledger operations either commit as a unit or leave nothing behind. These
decorators wrap async functions that receive an AsyncSession (as the
``session`` keyword or first positional argument, or as ``self.session``
on repository/service methods).
"""

from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any, TypeVar

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession


T = TypeVar("T")


def _find_session(args: tuple[Any, ...], kwargs: dict[str, Any]) -> AsyncSession | None:
    """Locate the session among call arguments."""
    session = kwargs.get("session")
    if isinstance(session, AsyncSession):
        return session
    if args:
        if isinstance(args[0], AsyncSession):
            return args[0]
        owner_session = getattr(args[0], "session", None)
        if isinstance(owner_session, AsyncSession):
            return owner_session
    return None


async def _safe_rollback(session: AsyncSession, func_name: str, error: BaseException) -> None:
    try:
        await session.rollback()
        logger.info(
            f"Rollback performed in {func_name} due to error: {type(error).__name__}",
            extra={"function": func_name},
        )
    except Exception as rollback_error:
        logger.error(
            f"Failed to rollback in {func_name}: {rollback_error}",
            exc_info=True,
        )


def with_rollback_on_error(
    func: Callable[..., Awaitable[T]],
) -> Callable[..., Awaitable[T]]:
    """
    Roll the session back if the wrapped coroutine raises.

    The original exception is always re-raised.

    Example:
        @with_rollback_on_error
        async def insert_links(session: AsyncSession, links):
            session.add_all(links)
            await session.flush()
    """
    @wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        session = _find_session(args, kwargs)
        if session is None:
            logger.warning(
                f"Function {func.__name__} decorated with @with_rollback_on_error "
                f"but no session argument found. Rollback will not be performed."
            )
            return await func(*args, **kwargs)

        try:
            return await func(*args, **kwargs)
        except BaseException as e:
            await _safe_rollback(session, func.__name__, e)
            raise

    return wrapper


def with_auto_commit(
    func: Callable[..., Awaitable[T]],
) -> Callable[..., Awaitable[T]]:
    """
    Commit the session when the wrapped coroutine succeeds, roll back otherwise.

    BaseException is caught so that task cancellation also rolls back.
    """
    @wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        session = _find_session(args, kwargs)
        if session is None:
            logger.warning(
                f"Function {func.__name__} decorated with @with_auto_commit "
                f"but no session argument found. Commit/rollback will not be performed."
            )
            return await func(*args, **kwargs)

        try:
            result = await func(*args, **kwargs)
            await session.commit()
            logger.debug(f"Auto-commit performed in {func.__name__}")
            return result
        except BaseException as e:
            await _safe_rollback(session, func.__name__, e)
            raise

    return wrapper
