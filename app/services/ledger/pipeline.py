"""
Submit pipeline.

Event Intake -> Chain Resolver -> Commission Deriver -> Ledger Writer.
"""

from collections.abc import Mapping
from typing import Any

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.repositories.rate_schedule_repository import RateScheduleRepository
from app.services.ledger.config import LedgerConfig
from app.services.ledger.intake import EventIntake
from app.services.ledger.types import SubmitResult
from app.services.ledger.writer import LedgerWriter
from app.services.referral.chain_manager import ReferralChainManager
from app.services.referral.commission_deriver import CommissionDeriver
from app.services.referral.types import (
    DerivedEntry,
    PurchaseEvent,
    RateSnapshot,
    ResolvedChain,
)
from app.utils.exceptions import ValidationError
from app.utils.retry import store_deadline


async def resolve_and_derive(
    session: AsyncSession,
    event: PurchaseEvent,
    deriver: CommissionDeriver,
    depth: int,
    chain: ResolvedChain | None = None,
) -> tuple[ResolvedChain, tuple[DerivedEntry, ...]]:
    """
    Resolve (unless given) the chain and derive the event's entries.

    Args:
        session: Read session
        event: Accepted event
        deriver: Commission deriver
        depth: Chain depth
        chain: Stored chain snapshot to reuse

    Returns:
        Tuple of (chain, derived entries)

    Raises:
        ValidationError: No rate schedule in force at occurred_at
    """
    if chain is None:
        chain = await ReferralChainManager(session).resolve_chain(event.purchaser_id, depth)

    schedule = await RateScheduleRepository(session).get_effective_at(event.occurred_at)
    if schedule is None:
        raise ValidationError(
            "No rate schedule effective at occurred_at",
            "deriver.derive",
            {"event_id": event.event_id},
        )
    derived = deriver.derive(event, chain, RateSnapshot.from_schedule(schedule))
    return chain, derived


class SubmitPipeline:
    """Runs one purchase event through intake, resolution, derivation and write."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        config: LedgerConfig,
        intake: EventIntake,
        deriver: CommissionDeriver,
        writer: LedgerWriter,
    ) -> None:
        """Initialize pipeline."""
        self.session_maker = session_maker
        self.config = config
        self.intake = intake
        self.deriver = deriver
        self.writer = writer

    async def process(self, raw: PurchaseEvent | Mapping[str, Any]) -> SubmitResult:
        """
        Submit one purchase event.

        Args:
            raw: PurchaseEvent or mapping

        Returns:
            SubmitResult; when accepted, ``apply`` holds the write outcome

        Raises:
            LedgerCancelledError: Deadline expired (no partial ledger state)
            TransientStoreError: Retries exhausted (dead-lettered, retry_safe)
        """
        decision = await self.intake.accept(raw)
        if decision.status != "accepted":
            return SubmitResult(
                status=decision.status,
                event_id=decision.event_id,
                reason=decision.reason,
            )

        event = decision.event
        ids = {"event_id": event.event_id}
        try:
            async with store_deadline(self.config.store_call_deadline, "pipeline.resolve", ids):
                async with self.session_maker() as session:
                    chain, derived = await resolve_and_derive(
                        session, event, self.deriver, self.config.max_generation
                    )
        except ValidationError as e:
            await self.writer.record_failure(e, event)
            return SubmitResult("accepted", event.event_id, reason=e.message)

        logger.debug(
            "Chain resolved for purchase",
            extra={
                "event_id": event.event_id,
                "chain": chain.beneficiary_ids,
                "stop_reason": chain.stop_reason,
                "derived": len(derived),
            },
        )

        apply_result = await self.writer.apply(event, chain, derived)
        return SubmitResult(
            status="accepted",
            event_id=event.event_id,
            apply=apply_result,
            reason="conflict" if apply_result.status == "conflict" else None,
        )
