"""
Commission ledger service.

Facade over the ledger components exposing the inbound operations:
submit, query, list, rollback and reconcile, plus the admin and
reporting reads. One instance owns one shared aggregate lock so the
writer, rollback and reconciler serialize on the same keys.
"""

import asyncio
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config.operational_constants import DEFAULT_PAGE_SIZE
from app.models.commission_entry import CommissionEntry
from app.models.dead_letter import LedgerDeadLetter
from app.models.participant import Participant
from app.models.rate_schedule import RateSchedule
from app.models.reconciler_run import ReconcilerRun
from app.repositories.participant_repository import ParticipantRepository
from app.services.ledger.admin import BOOTSTRAP_EFFECTIVE_FROM, LedgerAdmin
from app.services.ledger.config import LedgerConfig
from app.services.ledger.intake import EventIntake, IntakeQueue
from app.services.ledger.notifications import LedgerNotifier, NotificationHook
from app.services.ledger.pipeline import SubmitPipeline
from app.services.ledger.queries import LedgerQueries
from app.services.ledger.reconciler import ReconcileScope, Reconciler
from app.services.ledger.rollback import EventRollback
from app.services.ledger.types import (
    AggregateSnapshot,
    GenerationTotals,
    HandleCheck,
    Page,
    RollbackResult,
    SubmitResult,
)
from app.services.ledger.writer import LedgerWriter
from app.services.referral.commission_deriver import CommissionDeriver
from app.services.referral.types import PurchaseEvent
from app.utils.distributed_lock import DistributedLock, get_distributed_lock
from app.validators.referral_handle import validate_referrer_handle


class CommissionLedgerService:
    """
    Multi-generation referral commission ledger.

    Example:
        service = CommissionLedgerService(async_session_maker)
        result = await service.submit_purchase({
            "event_id": "evt-1",
            "purchaser_id": "p-42",
            "amount": "10000",
            "currency": "NGN",
            "product_kind": "share",
            "occurred_at": "2026-10-19T10:00:00Z",
        })
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        config: LedgerConfig | None = None,
        lock: DistributedLock | None = None,
        notifier: LedgerNotifier | None = None,
    ) -> None:
        """
        Initialize service.

        Args:
            session_maker: Session factory
            config: Ledger configuration (defaults when omitted)
            lock: Shared aggregate lock (in-process lock when omitted)
            notifier: Notification fan-out
        """
        self.session_maker = session_maker
        self.config = config or LedgerConfig()
        self.lock = lock or get_distributed_lock()
        self.notifier = notifier or LedgerNotifier()

        self.deriver = CommissionDeriver(self.config.rounding_mode)
        self.intake = EventIntake(session_maker, self.config, self.lock)
        self.writer = LedgerWriter(session_maker, self.config, self.lock, self.notifier)
        self.pipeline = SubmitPipeline(
            session_maker, self.config, self.intake, self.deriver, self.writer
        )
        self.rollback = EventRollback(session_maker, self.config, self.lock, self.notifier)
        self.reconciler = Reconciler(
            session_maker, self.config, self.lock, self.deriver, self.writer, self.notifier
        )
        self.queries = LedgerQueries(session_maker)
        self.admin = LedgerAdmin(session_maker)
        self._queue: IntakeQueue | None = None

    def subscribe(self, hook: NotificationHook) -> None:
        """Register a notification hook."""
        self.notifier.subscribe(hook)

    # Submit

    async def submit_purchase(self, event: PurchaseEvent | Mapping[str, Any]) -> SubmitResult:
        """
        Submit a purchase event and write its commissions.

        Returns:
            SubmitResult: accepted (with apply outcome), rejected or duplicate

        Raises:
            LedgerCancelledError: Store deadline expired; safe to resubmit
            TransientStoreError: Retries exhausted; safe to resubmit
        """
        return await self.pipeline.process(event)

    def create_intake_queue(self) -> IntakeQueue:
        """Bounded intake queue feeding the submit pipeline."""
        if self._queue is None:
            self._queue = IntakeQueue(
                self.pipeline.process,
                self.config.intake_queue_capacity,
                self.config.intake_workers,
            )
        return self._queue

    async def start(self) -> None:
        """Start intake workers."""
        self.create_intake_queue().start()

    async def stop(self, drain: bool = True) -> None:
        """Stop intake workers, draining queued events by default."""
        if self._queue is not None:
            await self._queue.stop(drain=drain)

    # Reads

    async def query_aggregate(self, beneficiary_id: str, currency: str) -> AggregateSnapshot:
        """Committed aggregate of a beneficiary in one currency."""
        return await self.queries.query_aggregate(beneficiary_id, currency)

    async def list_entries(
        self,
        beneficiary_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
        generation: int | None = None,
        status: str | None = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Page[CommissionEntry]:
        """Page through a beneficiary's entries."""
        return await self.queries.list_entries(
            beneficiary_id, since, until, generation, status, page, page_size
        )

    async def list_referred(
        self, beneficiary_id: str, generation: int | None = None, currency: str | None = None
    ) -> dict[int, list[str]]:
        """Referral tree of a beneficiary."""
        return await self.queries.list_referred(beneficiary_id, generation, currency)

    async def commission_breakdown(
        self, currency: str, since: datetime | None = None, until: datetime | None = None
    ) -> dict[int, GenerationTotals]:
        """Per-generation totals of active entries."""
        return await self.queries.commission_breakdown(currency, since, until)

    async def top_beneficiaries(self, currency: str, limit: int = 10) -> list[AggregateSnapshot]:
        """Highest earners in a currency."""
        return await self.queries.top_beneficiaries(currency, limit)

    async def list_dead_letters(
        self, kind: str | None = None, unresolved_only: bool = True, limit: int = 100
    ) -> list[LedgerDeadLetter]:
        """Dead letters awaiting triage."""
        return await self.queries.list_dead_letters(kind, unresolved_only, limit)

    async def list_reconciler_runs(self, limit: int = 20) -> list[ReconcilerRun]:
        """Most recent reconciler runs."""
        return await self.queries.list_reconciler_runs(limit)

    async def validate_referrer_handle(self, handle: str | None) -> HandleCheck:
        """
        Check a referrer handle.

        A well-formed handle that matches no participant is reported as
        ``unresolvable``.
        """
        is_valid, normalized, reason = validate_referrer_handle(handle)
        if not is_valid:
            return HandleCheck(valid=False, reason=reason)

        async with self.session_maker() as session:
            participant = await ParticipantRepository(session).get_by_handle(normalized)
        if participant is None:
            return HandleCheck(valid=False, reason="unresolvable")
        return HandleCheck(valid=True, participant_id=participant.id)

    # Repair and admin

    async def rollback_event(self, event_id: str, reason: str, actor: str = "system") -> RollbackResult:
        """Roll back every active entry of an event."""
        return await self.rollback.rollback(event_id, reason, actor)

    async def run_reconciliation(
        self,
        scope: str | ReconcileScope = "all",
        cancel_event: asyncio.Event | None = None,
    ) -> ReconcilerRun:
        """Run the reconciler over a scope."""
        return await self.reconciler.run(scope, cancel_event)

    async def publish_rate_schedule(
        self, rates: Mapping[int, Any], effective_from: datetime, created_by: str
    ) -> RateSchedule:
        """Append a rate schedule."""
        return await self.admin.publish_rate_schedule(rates, effective_from, created_by)

    async def bootstrap_rate_schedule(
        self, rates: Mapping[int, Any], effective_from: datetime = BOOTSTRAP_EFFECTIVE_FROM
    ) -> RateSchedule:
        """Ensure a rate schedule exists."""
        schedule = await self.admin.bootstrap_rate_schedule(rates, effective_from)
        logger.debug("Rate schedule ready", extra={"schedule_id": schedule.id})
        return schedule

    async def rate_history(self) -> list[RateSchedule]:
        """All published rate schedules."""
        return await self.admin.rate_history()

    async def clear_referrer_handle(self, participant_id: str, actor: str, reason: str) -> Participant:
        """Clear a broken referrer handle (audited)."""
        return await self.admin.clear_referrer_handle(participant_id, actor, reason)

    async def resolve_dead_letter(self, dead_letter_id: int, actor: str) -> bool:
        """Mark a dead letter resolved (audited)."""
        return await self.admin.resolve_dead_letter(dead_letter_id, actor)
