"""
Commission deriver.

Pure computation of the commission entries an event should produce.
No I/O: the caller supplies the event, its chain and the rates in force.
"""

from decimal import Decimal

from loguru import logger

from app.services.referral.types import (
    DerivedEntry,
    PurchaseEvent,
    RateSnapshot,
    ResolvedChain,
)
from app.utils.exceptions import IntegrityViolation
from app.utils.money import commission_amount, rate_fraction


class CommissionDeriver:
    """Derives the canonical commission entry set for an event."""

    def __init__(self, rounding_mode: str = "half-even") -> None:
        """
        Initialize deriver.

        Args:
            rounding_mode: half-even or half-up
        """
        self.rounding_mode = rounding_mode

    def derive(
        self,
        event: PurchaseEvent,
        chain: ResolvedChain,
        rates: RateSnapshot,
    ) -> tuple[DerivedEntry, ...]:
        """
        Compute the entries that should exist for an event.

        Suppressed ancestors, zero-rate generations and amounts that round
        to zero produce no entry. Currency is carried through unchanged.

        Args:
            event: Accepted purchase event
            chain: Resolved ancestor chain
            rates: Schedule effective at event.occurred_at

        Returns:
            Entries in generation order

        Raises:
            IntegrityViolation: The chain yields the same key twice or
                contains the purchaser
        """
        currency = str(event.currency)
        entries: list[DerivedEntry] = []
        seen: set[tuple[str, int, str]] = set()

        for link in chain.links:
            if link.beneficiary_id == event.purchaser_id:
                continue
            if link.suppressed:
                continue

            rate = rates.rate_percent(link.generation)
            if rate <= 0:
                continue

            amount = commission_amount(
                event.amount, rate, currency, self.rounding_mode
            )
            if amount <= Decimal("0"):
                continue

            entry = DerivedEntry(
                event_id=event.event_id,
                generation=link.generation,
                beneficiary_id=link.beneficiary_id,
                referred_id=event.purchaser_id,
                amount=amount,
                currency=currency,
                rate_applied=rate_fraction(rate),
            )
            if entry.key in seen:
                raise IntegrityViolation(
                    "Derivation produced a duplicate entry key",
                    "deriver.derive",
                    {"event_id": event.event_id, "generation": link.generation,
                     "beneficiary_id": link.beneficiary_id},
                )
            seen.add(entry.key)
            entries.append(entry)

        logger.debug(
            "Commissions derived",
            extra={
                "event_id": event.event_id,
                "chain_length": len(chain.links),
                "entries": len(entries),
            },
        )
        return tuple(entries)
