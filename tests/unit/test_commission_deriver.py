"""
Unit tests for CommissionDeriver.

Pure derivation: no database, chains and rates are supplied directly.
"""

from decimal import Decimal

import pytest

from app.services.referral.types import ChainLink, RateSnapshot, ResolvedChain
from app.utils.exceptions import IntegrityViolation


class TestDeriveDefaultSchedule:
    """Derivation under the 15/3/2 schedule."""

    def test_three_generations_on_10000_ngn(
        self, deriver, make_event, three_generation_chain, default_rates
    ):
        """A three-deep chain yields 1500, 300 and 200 NGN."""
        entries = deriver.derive(make_event(), three_generation_chain, default_rates)

        assert [(e.generation, e.beneficiary_id, e.amount) for e in entries] == [
            (1, "A", Decimal("1500.00")),
            (2, "B", Decimal("300.00")),
            (3, "C", Decimal("200.00")),
        ]
        assert all(e.currency == "NGN" for e in entries)
        assert all(e.referred_id == "P" for e in entries)

    def test_rate_applied_is_fraction(
        self, deriver, make_event, three_generation_chain, default_rates
    ):
        """Entries record the fraction that was applied."""
        entries = deriver.derive(make_event(), three_generation_chain, default_rates)
        assert [e.rate_applied for e in entries] == [
            Decimal("0.15"), Decimal("0.03"), Decimal("0.02")
        ]

    def test_sum_never_exceeds_purchase(
        self, deriver, make_event, three_generation_chain, default_rates
    ):
        """Total commission is bounded by the summed rate."""
        event = make_event(amount="9999.99")
        entries = deriver.derive(event, three_generation_chain, default_rates)
        total = sum(e.amount for e in entries)
        assert total <= event.amount * Decimal("0.20") + Decimal("0.015")

    def test_usdt_currency_carried(self, deriver, make_event, three_generation_chain, default_rates):
        """Currency is never converted."""
        entries = deriver.derive(
            make_event(amount="100", currency="USDT"), three_generation_chain, default_rates
        )
        assert entries[0].currency == "USDT"
        assert entries[0].amount == Decimal("15")


class TestDeriveSkips:
    """Links that produce no entry."""

    def test_empty_chain_yields_nothing(self, deriver, make_event, default_rates):
        """A purchaser with no referrer earns nobody anything."""
        assert deriver.derive(make_event(), ResolvedChain("P"), default_rates) == ()

    def test_short_chain(self, deriver, make_event, default_rates):
        """Only the resolved generations get entries."""
        chain = ResolvedChain("P", (ChainLink(1, "A"),), stop_reason="no_referrer")
        entries = deriver.derive(make_event(), chain, default_rates)
        assert [e.beneficiary_id for e in entries] == ["A"]

    def test_suppressed_link_skipped(self, deriver, make_event, default_rates):
        """Suppressed ancestors keep their generation slot but get nothing."""
        chain = ResolvedChain(
            "P",
            (ChainLink(1, "A"), ChainLink(2, "B", suppressed=True), ChainLink(3, "C")),
        )
        entries = deriver.derive(make_event(), chain, default_rates)
        assert [(e.generation, e.beneficiary_id) for e in entries] == [(1, "A"), (3, "C")]

    def test_purchaser_in_chain_skipped(self, deriver, make_event, default_rates):
        """The purchaser never earns from their own purchase."""
        chain = ResolvedChain("P", (ChainLink(1, "P"),))
        assert deriver.derive(make_event(), chain, default_rates) == ()

    def test_zero_rate_generation_skipped(self, deriver, make_event, three_generation_chain):
        """A zero rate produces no entry."""
        rates = RateSnapshot({1: Decimal("15"), 2: Decimal("0"), 3: Decimal("2")})
        entries = deriver.derive(make_event(), three_generation_chain, rates)
        assert [e.generation for e in entries] == [1, 3]

    def test_amount_rounding_to_zero_skipped(self, deriver, make_event, three_generation_chain, default_rates):
        """A commission that rounds to zero is not recorded."""
        entries = deriver.derive(make_event(amount="0.10"), three_generation_chain, default_rates)
        assert [e.generation for e in entries] == [1]

    def test_zero_amount_purchase(self, deriver, make_event, three_generation_chain, default_rates):
        """A zero-amount purchase yields no entries."""
        assert deriver.derive(make_event(amount="0"), three_generation_chain, default_rates) == ()


class TestDeriveDeterminism:
    """Derivation is a pure function of its inputs."""

    def test_same_inputs_same_entries(self, deriver, make_event, three_generation_chain, default_rates):
        """Two derivations are equal."""
        event = make_event()
        first = deriver.derive(event, three_generation_chain, default_rates)
        second = deriver.derive(event, three_generation_chain, default_rates)
        assert first == second

    def test_rounding_mode_changes_tie(self, deriver, half_up_deriver, make_event, default_rates):
        """Half-even and half-up disagree on an exact tie."""
        chain = ResolvedChain("P", (ChainLink(1, "A"),))
        rates = RateSnapshot({1: Decimal("2.5"), 2: Decimal("0"), 3: Decimal("0")})
        event = make_event(amount="0.2")

        assert deriver.derive(event, chain, rates) == ()
        assert half_up_deriver.derive(event, chain, rates)[0].amount == Decimal("0.01")

    def test_duplicate_key_raises(self, deriver, make_event, default_rates):
        """A chain producing the same key twice is an invariant violation."""
        chain = ResolvedChain("P", (ChainLink(1, "A"), ChainLink(1, "A")))
        with pytest.raises(IntegrityViolation):
            deriver.derive(make_event(), chain, default_rates)
