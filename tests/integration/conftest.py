"""
Fixtures for ledger integration tests.

Each test gets its own SQLite database file with the full schema,
including the partial unique index on active entries, and a
CommissionLedgerService with the default 15/3/2 schedule in force.
"""

from datetime import UTC, datetime

import pytest
import pytest_asyncio
from sqlalchemy import event, func, select

from app.config.business_constants import DEFAULT_GENERATION_RATES_PERCENT
from app.config.database import create_engine, create_session_maker
from app.models import Base, BeneficiaryAggregate, CommissionEntry, Participant
from app.models.enums import EntryStatus, ParticipantStatus
from app.services.ledger import CommissionLedgerService, LedgerConfig
from app.utils.distributed_lock import DistributedLock


def handle_for(participant_id: str) -> str:
    """Referral handle used for a seeded participant."""
    return f"h_{participant_id.lower()}"


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Async SQLite engine on a fresh database file."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}", echo=False)

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    """Session maker bound to the test engine."""
    return create_session_maker(engine)


@pytest.fixture
def ledger_config():
    """Fast retries and a generous deadline for SQLite."""
    return LedgerConfig(
        retry_backoff=(0.01, 0.05),
        retry_max_attempts=10,
        store_call_deadline=10.0,
        intake_queue_capacity=4,
        intake_workers=2,
    )


@pytest_asyncio.fixture
async def ledger(session_maker, ledger_config):
    """Ledger service with the default schedule effective since 2000."""
    service = CommissionLedgerService(
        session_maker, config=ledger_config, lock=DistributedLock()
    )
    await service.bootstrap_rate_schedule(DEFAULT_GENERATION_RATES_PERCENT)
    return service


@pytest.fixture
def add_participants(session_maker):
    """
    Seed participants.

    Usage:
        await add_participants(("P", "A"), ("A", None), ("B", "A", "banned"))

    Each tuple is (id, referrer_id, status); the referrer is stored as
    that participant's handle.
    """
    async def _add(*rows: tuple) -> None:
        async with session_maker() as session:
            async with session.begin():
                for row in rows:
                    participant_id, referrer_id = row[0], row[1]
                    status = row[2] if len(row) > 2 else ParticipantStatus.ACTIVE
                    session.add(
                        Participant(
                            id=participant_id,
                            handle=handle_for(participant_id),
                            referrer_handle=handle_for(referrer_id) if referrer_id else None,
                            status=status,
                        )
                    )
    return _add


@pytest_asyncio.fixture
async def chain_pabc(add_participants):
    """P -> A -> B -> C, everyone active."""
    await add_participants(("P", "A"), ("A", "B"), ("B", "C"), ("C", None))


@pytest.fixture
def purchase():
    """Factory for purchase payloads as the host platform sends them."""
    def _purchase(
        event_id: str = "e1",
        purchaser_id: str = "P",
        amount: str = "10000",
        currency: str = "NGN",
        product_kind: str = "share",
        occurred_at: datetime | None = None,
    ) -> dict:
        return {
            "event_id": event_id,
            "purchaser_id": purchaser_id,
            "amount": amount,
            "currency": currency,
            "product_kind": product_kind,
            "occurred_at": (occurred_at or datetime(2026, 6, 1, 12, 0, tzinfo=UTC)).isoformat(),
        }
    return _purchase


@pytest.fixture
def fetch_entries(session_maker):
    """Read entries, optionally filtered by event and status."""
    async def _fetch(event_id: str | None = None, status: str | None = None) -> list[CommissionEntry]:
        stmt = select(CommissionEntry).order_by(CommissionEntry.id)
        if event_id is not None:
            stmt = stmt.where(CommissionEntry.event_id == event_id)
        if status is not None:
            stmt = stmt.where(CommissionEntry.status == status)
        async with session_maker() as session:
            return list((await session.execute(stmt)).scalars().all())
    return _fetch


@pytest.fixture
def assert_conserved(session_maker):
    """Check every aggregate equals the sum of its active entries."""
    async def _check() -> None:
        async with session_maker() as session:
            sums = {
                (row.beneficiary_id, row.currency): row.total
                for row in (
                    await session.execute(
                        select(
                            CommissionEntry.beneficiary_id,
                            CommissionEntry.currency,
                            func.sum(CommissionEntry.amount).label("total"),
                        )
                        .where(CommissionEntry.status == EntryStatus.ACTIVE)
                        .group_by(CommissionEntry.beneficiary_id, CommissionEntry.currency)
                    )
                ).all()
            }
            aggregates = (await session.execute(select(BeneficiaryAggregate))).scalars().all()
        for aggregate in aggregates:
            expected = sums.get((aggregate.beneficiary_id, aggregate.currency), 0)
            assert aggregate.total_earnings == expected, aggregate
            assert (
                aggregate.generation_1_earnings
                + aggregate.generation_2_earnings
                + aggregate.generation_3_earnings
                == aggregate.total_earnings
            )
        assert {(a.beneficiary_id, a.currency) for a in aggregates} >= set(sums)
    return _check
