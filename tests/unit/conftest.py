"""
Shared fixtures for unit tests.

Unit tests cover pure components and need no database:
- CommissionDeriver instances in both rounding modes
- A recording sleep for retry policies
"""

import pytest

from app.services.referral.commission_deriver import CommissionDeriver


@pytest.fixture
def deriver():
    """
    Half-even CommissionDeriver.

    Returns:
        CommissionDeriver: Deriver with the default rounding mode
    """
    return CommissionDeriver("half-even")


@pytest.fixture
def half_up_deriver():
    """CommissionDeriver rounding half-up."""
    return CommissionDeriver("half-up")


@pytest.fixture
def recorded_sleeps():
    """
    Sleep replacement that records requested delays.

    Returns:
        tuple: (sleep coroutine function, list of delays)
    """
    delays: list[float] = []

    async def sleep(delay: float) -> None:
        delays.append(delay)

    return sleep, delays
