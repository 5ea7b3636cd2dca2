"""
Ledger admin actions.

Rate schedule publication, referrer handle clearing and dead-letter
resolution. Every action commits as a unit and leaves an audit row.
"""

from collections.abc import Mapping
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config.business_constants import GENERATIONS, MAX_RATE_PERCENT, RATE_PERCENT_SCALE
from app.models.participant import Participant
from app.models.rate_schedule import RateSchedule
from app.repositories.admin_audit_log_repository import AdminAuditLogRepository
from app.repositories.dead_letter_repository import LedgerDeadLetterRepository
from app.repositories.participant_repository import ParticipantRepository
from app.repositories.purchase_event_repository import PurchaseEventRepository
from app.repositories.rate_schedule_repository import RateScheduleRepository
from app.utils.datetime_utils import ensure_utc, utc_now
from app.utils.db_decorators import with_auto_commit
from app.utils.exceptions import ValidationError
from app.validators.common import validate_amount


# Default schedule applies to every event ever recorded
BOOTSTRAP_EFFECTIVE_FROM = datetime(2000, 1, 1, tzinfo=UTC)


def _parse_rates(rates: Mapping[int, Any], operation: str) -> dict[int, Decimal]:
    """
    Validate per-generation percent rates.

    Raises:
        ValidationError: Missing generation, negative rate or rate above 100%
    """
    parsed: dict[int, Decimal] = {}
    for generation in GENERATIONS:
        if generation not in rates:
            raise ValidationError(
                f"Missing rate for generation {generation}", operation,
                {"generation": generation},
            )
        is_valid, rate, error = validate_amount(rates[generation], max_scale=RATE_PERCENT_SCALE)
        if not is_valid:
            raise ValidationError(
                f"Generation {generation} rate: {error}", operation,
                {"generation": generation},
            )
        if rate > MAX_RATE_PERCENT:
            raise ValidationError(
                f"Generation {generation} rate exceeds {MAX_RATE_PERCENT}%", operation,
                {"generation": generation},
            )
        parsed[generation] = rate
    return parsed


@with_auto_commit
async def publish_rate_schedule(
    session: AsyncSession,
    rates: Mapping[int, Any],
    effective_from: datetime,
    created_by: str,
) -> RateSchedule:
    """
    Append a new rate schedule.

    Schedules are never edited. A new one must start strictly after the
    latest one and after every recorded event, so no accepted event ever
    changes the schedule it was derived under.

    Args:
        session: Database session
        rates: Percent rate per generation (1..3)
        effective_from: Start of validity
        created_by: Admin publishing the schedule

    Returns:
        Created RateSchedule

    Raises:
        ValidationError: Invalid rates or effective_from
    """
    operation = "admin.publish_rate_schedule"
    parsed = _parse_rates(rates, operation)
    effective_from = ensure_utc(effective_from)

    repo = RateScheduleRepository(session)
    latest = await repo.get_latest()
    if latest is not None and effective_from <= ensure_utc(latest.effective_from):
        raise ValidationError(
            "effective_from must be later than the latest schedule",
            operation,
            {"latest_effective_from": ensure_utc(latest.effective_from).isoformat()},
        )
    if await PurchaseEventRepository(session).has_events_since(effective_from):
        raise ValidationError(
            "effective_from must be later than every recorded event",
            operation,
            {"effective_from": effective_from.isoformat()},
        )

    schedule = await repo.create(
        rate_generation_1=parsed[1],
        rate_generation_2=parsed[2],
        rate_generation_3=parsed[3],
        effective_from=effective_from,
        created_by=created_by,
    )
    await AdminAuditLogRepository(session).log_action(
        action="publish_rate_schedule",
        actor=created_by,
        target=f"rate_schedule:{schedule.id}",
        details={
            "rates": {str(g): str(r) for g, r in parsed.items()},
            "effective_from": effective_from.isoformat(),
        },
    )
    logger.info(
        f"Rate schedule published: {parsed[1]}/{parsed[2]}/{parsed[3]}",
        extra={"schedule_id": schedule.id, "actor": created_by},
    )
    return schedule


@with_auto_commit
async def bootstrap_rate_schedule(
    session: AsyncSession,
    rates: Mapping[int, Any],
    effective_from: datetime = BOOTSTRAP_EFFECTIVE_FROM,
) -> RateSchedule:
    """Insert the default schedule when none exists; otherwise return the latest."""
    repo = RateScheduleRepository(session)
    latest = await repo.get_latest()
    if latest is not None:
        return latest

    parsed = _parse_rates(rates, "admin.bootstrap_rate_schedule")
    schedule = await repo.create(
        rate_generation_1=parsed[1],
        rate_generation_2=parsed[2],
        rate_generation_3=parsed[3],
        effective_from=ensure_utc(effective_from),
        created_by="system",
    )
    logger.info(
        "Default rate schedule created",
        extra={"schedule_id": schedule.id},
    )
    return schedule


@with_auto_commit
async def clear_referrer_handle(
    session: AsyncSession,
    participant_id: str,
    actor: str,
    reason: str,
) -> Participant:
    """
    Clear a participant's referrer handle.

    The explicit repair for handles the reconciler flags as unresolvable.

    Raises:
        ValidationError: Unknown participant
    """
    repo = ParticipantRepository(session)
    participant = await repo.get_by_id(participant_id)
    if participant is None:
        raise ValidationError(
            f"Unknown participant: {participant_id}",
            "admin.clear_referrer_handle",
            {"participant_id": participant_id},
        )

    previous = participant.referrer_handle
    participant.referrer_handle = None
    await session.flush()
    await AdminAuditLogRepository(session).log_action(
        action="clear_referrer_handle",
        actor=actor,
        target=participant_id,
        details={"previous_referrer_handle": previous, "reason": reason},
    )
    logger.warning(
        "Referrer handle cleared",
        extra={"participant_id": participant_id, "actor": actor, "previous": previous},
    )
    return participant


@with_auto_commit
async def resolve_dead_letter(session: AsyncSession, dead_letter_id: int, actor: str) -> bool:
    """Mark a dead letter resolved; False if unknown or already resolved."""
    resolved = await LedgerDeadLetterRepository(session).resolve(
        dead_letter_id, actor, utc_now()
    )
    if resolved:
        await AdminAuditLogRepository(session).log_action(
            action="resolve_dead_letter",
            actor=actor,
            target=f"dead_letter:{dead_letter_id}",
        )
    return resolved


class LedgerAdmin:
    """Admin actions bound to a session factory."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        """Initialize with a session factory."""
        self.session_maker = session_maker

    async def publish_rate_schedule(
        self, rates: Mapping[int, Any], effective_from: datetime, created_by: str
    ) -> RateSchedule:
        """See :func:`publish_rate_schedule`."""
        async with self.session_maker() as session:
            return await publish_rate_schedule(session, rates, effective_from, created_by)

    async def bootstrap_rate_schedule(
        self, rates: Mapping[int, Any], effective_from: datetime = BOOTSTRAP_EFFECTIVE_FROM
    ) -> RateSchedule:
        """See :func:`bootstrap_rate_schedule`."""
        async with self.session_maker() as session:
            return await bootstrap_rate_schedule(session, rates, effective_from)

    async def clear_referrer_handle(self, participant_id: str, actor: str, reason: str) -> Participant:
        """See :func:`clear_referrer_handle`."""
        async with self.session_maker() as session:
            return await clear_referrer_handle(session, participant_id, actor, reason)

    async def resolve_dead_letter(self, dead_letter_id: int, actor: str) -> bool:
        """See :func:`resolve_dead_letter`."""
        async with self.session_maker() as session:
            return await resolve_dead_letter(session, dead_letter_id, actor)

    async def rate_history(self) -> list[RateSchedule]:
        """All published schedules, oldest first."""
        async with self.session_maker() as session:
            return await RateScheduleRepository(session).list_history()
