"""
Result types of the ledger's public operations.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Generic, Literal, TypeVar

from app.services.referral.types import DerivedEntry, PurchaseEvent
from app.utils.datetime_utils import ensure_utc


T = TypeVar("T")

SubmitStatus = Literal["accepted", "rejected", "duplicate"]
ApplyStatus = Literal["applied", "noop", "conflict"]
RollbackStatus = Literal["rolled_back", "noop", "not_found"]


@dataclass
class IntakeDecision:
    """Outcome of event intake."""

    status: SubmitStatus
    event_id: str | None
    event: PurchaseEvent | None = None
    reason: str | None = None


@dataclass
class ApplyResult:
    """
    Outcome of a ledger write.

    Attributes:
        status: applied, noop or conflict
        event_id: Event written
        inserted: Entries inserted by this call
        conflicts: Offending entries when status is conflict
    """

    status: ApplyStatus
    event_id: str
    inserted: list[DerivedEntry] = field(default_factory=list)
    conflicts: list[dict[str, Any]] = field(default_factory=list)

    @property
    def applied_count(self) -> int:
        """Number of inserted entries."""
        return len(self.inserted)


@dataclass
class SubmitResult:
    """Outcome of SubmitPurchase."""

    status: SubmitStatus
    event_id: str | None
    reason: str | None = None
    apply: ApplyResult | None = None
    retry_safe: bool = False

    @property
    def accepted(self) -> bool:
        """Whether intake accepted the event."""
        return self.status == "accepted"


@dataclass
class RollbackResult:
    """Outcome of RollbackEvent."""

    status: RollbackStatus
    event_id: str
    entries_rolled_back: int = 0
    beneficiaries: list[str] = field(default_factory=list)


@dataclass
class GenerationTotals:
    """Per-generation aggregate figures."""

    count: int = 0
    earnings: Decimal = Decimal("0")


@dataclass
class AggregateSnapshot:
    """
    Committed aggregate of one beneficiary in one currency.

    ``version`` increases with every committed change; clients re-read
    after it moves.
    """

    beneficiary_id: str
    currency: str
    total_earnings: Decimal = Decimal("0")
    generations: dict[int, GenerationTotals] = field(
        default_factory=lambda: {g: GenerationTotals() for g in (1, 2, 3)}
    )
    direct_referral_count: int = 0
    version: int = 0
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, aggregate: Any) -> "AggregateSnapshot":
        """Build from a BeneficiaryAggregate row."""
        return cls(
            beneficiary_id=aggregate.beneficiary_id,
            currency=aggregate.currency,
            total_earnings=Decimal(aggregate.total_earnings),
            generations={
                g: GenerationTotals(
                    count=getattr(aggregate, f"generation_{g}_count"),
                    earnings=Decimal(getattr(aggregate, f"generation_{g}_earnings")),
                )
                for g in (1, 2, 3)
            },
            direct_referral_count=aggregate.direct_referral_count,
            version=aggregate.version,
            updated_at=ensure_utc(aggregate.updated_at),
        )


@dataclass
class Page(Generic[T]):
    """One page of a listing."""

    items: list[T]
    total: int
    page: int
    page_size: int

    @property
    def has_next(self) -> bool:
        """Whether another page follows."""
        return self.page * self.page_size < self.total


@dataclass
class HandleCheck:
    """Outcome of ValidateReferrerHandle."""

    valid: bool
    reason: str | None = None
    participant_id: str | None = None
