"""
Domain types shared by the chain resolver, the deriver and the ledger.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.config.business_constants import CURRENCY_SCALE
from app.models.enums import Currency, ProductKind
from app.utils.datetime_utils import ensure_utc
from app.validators.common import (
    fits_scale,
    validate_amount,
    validate_currency,
    validate_product_kind,
)


class PurchaseEvent(BaseModel):
    """
    Canonical completed-purchase event.

    Legacy spellings of currency and product kind are normalized on
    construction; construction fails for anything the ledger cannot accept.
    """

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    event_id: str = Field(..., min_length=1, max_length=128, description="Globally unique event ID")
    purchaser_id: str = Field(..., min_length=1, max_length=64, description="Purchasing participant")
    amount: Decimal = Field(..., ge=0, description="Purchase amount")
    currency: Currency = Field(..., description="NGN or USDT")
    product_kind: ProductKind = Field(..., description="share or cofounder (metadata only)")
    occurred_at: datetime = Field(..., description="When the purchase completed")
    source_ref: str | None = Field(default=None, max_length=255, description="External reference")

    @field_validator("amount", mode="before")
    @classmethod
    def parse_amount(cls, v: Any) -> Decimal:
        """Reject floats and non-numeric amounts."""
        is_valid, amount, error = validate_amount(v)
        if not is_valid:
            raise ValueError(error)
        return amount

    @field_validator("currency", mode="before")
    @classmethod
    def normalize_currency(cls, v: Any) -> str:
        """Map legacy currency spellings."""
        is_valid, currency, error = validate_currency(v)
        if not is_valid:
            raise ValueError(error)
        return currency

    @field_validator("product_kind", mode="before")
    @classmethod
    def normalize_product_kind(cls, v: Any) -> str:
        """Map legacy product spellings."""
        is_valid, kind, error = validate_product_kind(v)
        if not is_valid:
            raise ValueError(error)
        return kind

    @field_validator("occurred_at")
    @classmethod
    def normalize_occurred_at(cls, v: datetime) -> datetime:
        """Store event time as aware UTC."""
        return ensure_utc(v)

    @model_validator(mode="after")
    def check_amount_scale(self) -> "PurchaseEvent":
        """Amounts finer than the currency's smallest unit are refused."""
        scale = CURRENCY_SCALE[self.currency]
        if not fits_scale(self.amount, scale):
            raise ValueError(f"Amount has more than {scale} decimal places for {self.currency}")
        return self

    @classmethod
    def from_record(cls, record: Any) -> "PurchaseEvent":
        """Rebuild the event from a stored events-log row."""
        return cls(
            event_id=record.event_id,
            purchaser_id=record.purchaser_id,
            amount=Decimal(record.amount),
            currency=record.currency,
            product_kind=record.product_kind,
            occurred_at=record.occurred_at,
            source_ref=record.source_ref,
        )


@dataclass(frozen=True)
class ChainLink:
    """One resolved ancestor."""

    generation: int
    beneficiary_id: str
    suppressed: bool = False


@dataclass(frozen=True)
class ResolvedChain:
    """
    Resolved ancestor chain of a purchaser.

    Attributes:
        purchaser_id: Purchaser the walk started from
        links: Ancestors in ascending generation order (at most 3)
        stop_reason: Why the walk ended before the depth limit, if it did
    """

    purchaser_id: str
    links: tuple[ChainLink, ...] = ()
    stop_reason: str | None = None

    @property
    def beneficiary_ids(self) -> list[str]:
        """Beneficiaries in generation order."""
        return [link.beneficiary_id for link in self.links]

    @classmethod
    def from_snapshot(cls, purchaser_id: str, rows: list[Any]) -> "ResolvedChain":
        """Rebuild a chain from stored snapshot rows."""
        return cls(
            purchaser_id=purchaser_id,
            links=tuple(
                ChainLink(row.generation, row.beneficiary_id, bool(row.suppressed))
                for row in sorted(rows, key=lambda r: r.generation)
            ),
            stop_reason="snapshot",
        )


@dataclass(frozen=True)
class RateSnapshot:
    """Per-generation rates (percent) in force for an event."""

    rates: dict[int, Decimal] = field(default_factory=dict)
    effective_from: datetime | None = None
    schedule_id: int | None = None

    def rate_percent(self, generation: int) -> Decimal:
        """Rate for a generation in percent (0 when absent)."""
        return self.rates.get(generation, Decimal("0"))

    @classmethod
    def from_schedule(cls, schedule: Any) -> "RateSnapshot":
        """Build from a RateSchedule row."""
        return cls(
            rates={g: Decimal(schedule.rate_percent(g)) for g in (1, 2, 3)},
            effective_from=ensure_utc(schedule.effective_from),
            schedule_id=schedule.id,
        )


@dataclass(frozen=True)
class DerivedEntry:
    """A commission entry that should exist for an event."""

    event_id: str
    generation: int
    beneficiary_id: str
    referred_id: str
    amount: Decimal
    currency: str
    rate_applied: Decimal

    @property
    def key(self) -> tuple[str, int, str]:
        """Uniqueness key among active entries."""
        return (self.event_id, self.generation, self.beneficiary_id)

    def to_row(self) -> dict[str, Any]:
        """Column values for a commission_entries insert."""
        return {
            "event_id": self.event_id,
            "generation": self.generation,
            "beneficiary_id": self.beneficiary_id,
            "referred_id": self.referred_id,
            "amount": self.amount,
            "currency": self.currency,
            "rate_applied": self.rate_applied,
        }
