"""
Ledger invariants under repetition, concurrency, cancellation and repair.
"""

import asyncio
from datetime import UTC, datetime
from decimal import Decimal

import pytest
from sqlalchemy import text, update
from sqlalchemy.exc import IntegrityError

from app.config.business_constants import DEFAULT_GENERATION_RATES_PERCENT
from app.models import BeneficiaryAggregate, CommissionEntry
from app.models.enums import EntryStatus, ReconcilerRunStatus
from app.services.ledger import CommissionLedgerService, LedgerConfig
from app.services.ledger.aggregates import AggregateMutator
from app.services.ledger.pipeline import resolve_and_derive
from app.services.referral.types import PurchaseEvent
from app.utils.distributed_lock import DistributedLock
from app.utils.exceptions import LedgerCancelledError
from app.utils.money import round_amount


class TestIdempotence:
    """Applying an event again changes nothing."""

    @pytest.mark.asyncio
    async def test_reapply_is_noop(self, ledger, chain_pabc, purchase, session_maker, fetch_entries):
        """A second write of the same derivation is a noop."""
        payload = purchase("e1")
        await ledger.submit_purchase(payload)
        before = await ledger.query_aggregate("A", "NGN")

        event = PurchaseEvent.model_validate(payload)
        async with session_maker() as session:
            chain, derived = await resolve_and_derive(session, event, ledger.deriver, 3)
        for _ in range(3):
            result = await ledger.writer.apply(event, chain, derived)
            assert result.status == "noop"

        after = await ledger.query_aggregate("A", "NGN")
        assert (after.total_earnings, after.version) == (before.total_earnings, before.version)
        assert len(await fetch_entries("e1", EntryStatus.ACTIVE)) == 3

    @pytest.mark.asyncio
    async def test_partial_apply_fills_gaps_only(self, ledger, chain_pabc, purchase, session_maker, fetch_entries):
        """Applying a superset inserts only what is missing."""
        event = PurchaseEvent.model_validate(purchase("e1"))
        await ledger.intake.accept(event)
        async with session_maker() as session:
            chain, derived = await resolve_and_derive(session, event, ledger.deriver, 3)

        first = await ledger.writer.apply(event, chain, derived[:1])
        second = await ledger.writer.apply(event, chain, derived)

        assert first.applied_count == 1
        assert [d.generation for d in second.inserted] == [2, 3]
        assert len(await fetch_entries("e1")) == 3


class TestConservation:
    """Aggregates always equal the sum of active entries."""

    @pytest.mark.asyncio
    async def test_after_submits_and_rollbacks(self, ledger, chain_pabc, add_participants, purchase, assert_conserved):
        """Mixed submits, currencies and rollbacks keep totals exact."""
        await add_participants(("Q", "B"))

        await ledger.submit_purchase(purchase("e1"))
        await ledger.submit_purchase(purchase("e2", amount="333.33"))
        await ledger.submit_purchase(purchase("e3", purchaser_id="Q", amount="5000"))
        await ledger.submit_purchase(purchase("e4", amount="12.5", currency="USDT"))
        await ledger.rollback_event("e2", "refund")
        await assert_conserved()

        b = await ledger.query_aggregate("B", "NGN")
        # 300 from e1 at g2 plus 750 from e3 at g1
        assert b.total_earnings == Decimal("1050")
        assert b.generations[1].count == 1
        assert b.generations[2].count == 1
        usdt = await ledger.query_aggregate("A", "USDT")
        assert usdt.total_earnings == Decimal("1.875")


class TestUniqueness:
    """At most one active entry per key."""

    @pytest.mark.asyncio
    async def test_store_rejects_second_active_entry(self, ledger, chain_pabc, purchase, session_maker):
        """The partial unique index guards the key."""
        await ledger.submit_purchase(purchase("e1"))

        with pytest.raises(IntegrityError):
            async with session_maker() as session:
                async with session.begin():
                    session.add(
                        CommissionEntry(
                            event_id="e1", generation=1, beneficiary_id="A", referred_id="P",
                            amount=Decimal("1500"), currency="NGN", rate_applied=Decimal("0.15"),
                            status=EntryStatus.ACTIVE,
                        )
                    )

    @pytest.mark.asyncio
    async def test_inactive_rows_do_not_block(self, ledger, chain_pabc, purchase, session_maker):
        """Rolled-back keys may coexist with a fresh active row."""
        await ledger.submit_purchase(purchase("e1"))
        await ledger.rollback_event("e1", "fraud")

        async with session_maker() as session:
            async with session.begin():
                session.add(
                    CommissionEntry(
                        event_id="e1", generation=1, beneficiary_id="A", referred_id="P",
                        amount=Decimal("1500"), currency="NGN", rate_applied=Decimal("0.15"),
                        status=EntryStatus.ACTIVE,
                    )
                )


class TestRateCorrectness:
    """Entry amounts follow the stored rate."""

    @pytest.mark.asyncio
    async def test_amount_matches_rate_applied(self, ledger, chain_pabc, purchase, fetch_entries):
        """amount == round(event.amount * rate_applied)."""
        await ledger.submit_purchase(purchase("e1", amount="1234.57"))

        for entry in await fetch_entries("e1"):
            assert entry.amount == round_amount(
                Decimal("1234.57") * entry.rate_applied, "NGN"
            )


class TestConcurrency:
    """Parallel submissions."""

    @pytest.mark.asyncio
    @pytest.mark.slow
    async def test_same_event_in_parallel(self, ledger, chain_pabc, purchase, fetch_entries, assert_conserved):
        """N copies of one event write the canonical set once."""
        results = await asyncio.gather(*(ledger.submit_purchase(purchase("e1")) for _ in range(8)))

        statuses = sorted(r.status for r in results)
        assert statuses.count("accepted") == 1
        assert statuses.count("duplicate") == 7
        entries = await fetch_entries("e1", EntryStatus.ACTIVE)
        assert sorted(e.key for e in entries) == [("e1", 1, "A"), ("e1", 2, "B"), ("e1", 3, "C")]
        assert (await ledger.query_aggregate("A", "NGN")).total_earnings == Decimal("1500")
        await assert_conserved()

    @pytest.mark.asyncio
    @pytest.mark.slow
    async def test_distinct_events_share_aggregates(self, ledger, chain_pabc, purchase, assert_conserved):
        """Concurrent events on one chain sum exactly."""
        await asyncio.gather(*(ledger.submit_purchase(purchase(f"e{i}")) for i in range(6)))

        a = await ledger.query_aggregate("A", "NGN")
        assert a.total_earnings == Decimal("9000")
        assert a.version == 6
        await assert_conserved()


class TestCancellation:
    """An aborted write leaves no partial state."""

    @pytest.mark.asyncio
    async def test_deadline_mid_write(self, session_maker, chain_pabc, purchase, fetch_entries, monkeypatch):
        """Entries flushed before the deadline are rolled back with it."""
        ledger = CommissionLedgerService(
            session_maker,
            config=LedgerConfig(retry_backoff=(0.01,), store_call_deadline=0.5),
            lock=DistributedLock(),
        )
        await ledger.bootstrap_rate_schedule(DEFAULT_GENERATION_RATES_PERCENT)

        original = AggregateMutator.add_entries

        async def stalled_add_entries(self, entries, at):
            await asyncio.sleep(5)
            return await original(self, entries, at)

        monkeypatch.setattr(AggregateMutator, "add_entries", stalled_add_entries)

        with pytest.raises(LedgerCancelledError) as exc_info:
            await ledger.submit_purchase(purchase("e1"))

        assert exc_info.value.operation == "writer.apply"
        assert await fetch_entries("e1") == []
        assert (await ledger.query_aggregate("A", "NGN")).version == 0

        # Resubmitting is safe: the reconciler completes the accepted event
        monkeypatch.setattr(AggregateMutator, "add_entries", original)
        run = await ledger.run_reconciliation("event:e1")

        assert {f["type"] for f in run.findings} >= {"missing_chain_snapshot", "missing_entries"}
        assert len(await fetch_entries("e1", EntryStatus.ACTIVE)) == 3
        assert (await ledger.query_aggregate("A", "NGN")).total_earnings == Decimal("1500")

    @pytest.mark.asyncio
    async def test_cancelled_reconciliation_is_journaled(self, ledger, chain_pabc, purchase):
        """A set cancel event stops the run cleanly."""
        await ledger.submit_purchase(purchase("e1"))
        cancel = asyncio.Event()
        cancel.set()

        run = await ledger.run_reconciliation("all", cancel_event=cancel)

        assert run.status == ReconcilerRunStatus.CANCELLED
        assert run.finished_at is not None


class TestReconcilerConvergence:
    """One pass repairs; the next pass finds nothing to do."""

    @pytest.mark.asyncio
    async def test_second_pass_is_noop(
        self, ledger, chain_pabc, purchase, session_maker, fetch_entries, assert_conserved
    ):
        """Injected duplicates and drift are fixed in one pass."""
        await ledger.submit_purchase(purchase("e1"))
        await ledger.submit_purchase(purchase("e2", amount="2000"))

        async with session_maker() as session:
            async with session.begin():
                await session.execute(text("DROP INDEX uq_commission_entries_active"))
                for generation, beneficiary, amount in ((1, "A", "300"), (3, "C", "40")):
                    session.add(
                        CommissionEntry(
                            event_id="e2", generation=generation, beneficiary_id=beneficiary,
                            referred_id="P", amount=Decimal(amount), currency="NGN",
                            rate_applied=Decimal("0.15") if generation == 1 else Decimal("0.02"),
                            status=EntryStatus.ACTIVE, created_at=datetime.now(UTC),
                        )
                    )
                await session.execute(
                    update(BeneficiaryAggregate)
                    .where(BeneficiaryAggregate.beneficiary_id == "B")
                    .values(total_earnings=Decimal("9999"))
                )

        first = await ledger.run_reconciliation("all")

        assert first.status == ReconcilerRunStatus.COMPLETED
        types = {f["type"] for f in first.findings}
        assert {"duplicate_entries", "aggregate_drift"} <= types
        assert len(await fetch_entries("e2", EntryStatus.DUPLICATE)) == 2
        assert (await ledger.query_aggregate("B", "NGN")).total_earnings == Decimal("360")
        await assert_conserved()

        second = await ledger.run_reconciliation("all")

        assert second.actions == []
        assert not {f["type"] for f in second.findings} & {"duplicate_entries", "aggregate_drift"}
