"""Pytest configuration and shared fixtures for all tests."""

import os
import sys
from pathlib import Path

# Minimal environment so app.config.settings loads without a .env file
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test_ledger.db")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("REDIS_HOST", "localhost")

# Add project root to PYTHONPATH
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import AsyncMock

import dramatiq
import pytest
from dramatiq.brokers.stub import StubBroker

from app.services.referral.types import ChainLink, PurchaseEvent, RateSnapshot, ResolvedChain

# Actors bind to the stub broker; no Redis needed
dramatiq.set_broker(StubBroker())


@pytest.fixture
def default_rates():
    """Default 15/3/2 percent schedule."""
    return RateSnapshot(
        rates={1: Decimal("15"), 2: Decimal("3"), 3: Decimal("2")},
        effective_from=datetime(2026, 1, 1, tzinfo=UTC),
        schedule_id=1,
    )


@pytest.fixture
def make_event():
    """Factory for purchase events."""
    def _make(
        event_id: str = "e1",
        purchaser_id: str = "P",
        amount: str = "10000",
        currency: str = "NGN",
        product_kind: str = "share",
        occurred_at: datetime | None = None,
    ) -> PurchaseEvent:
        return PurchaseEvent(
            event_id=event_id,
            purchaser_id=purchaser_id,
            amount=amount,
            currency=currency,
            product_kind=product_kind,
            occurred_at=occurred_at or datetime(2026, 6, 1, 12, 0, tzinfo=UTC),
        )
    return _make


@pytest.fixture
def three_generation_chain():
    """P -> A -> B -> C, everyone active."""
    return ResolvedChain(
        "P",
        (ChainLink(1, "A"), ChainLink(2, "B"), ChainLink(3, "C")),
    )


@pytest.fixture
def mock_redis_client():
    """Mock Redis client for lock tests."""
    client = AsyncMock()
    client.set = AsyncMock(return_value=True)
    client.eval = AsyncMock(return_value=1)
    return client
