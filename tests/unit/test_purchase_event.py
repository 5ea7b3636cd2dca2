"""Unit tests for PurchaseEvent normalization and validation."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from app.services.referral.types import PurchaseEvent


def _payload(**overrides):
    payload = {
        "event_id": "evt-1",
        "purchaser_id": "P",
        "amount": "10000",
        "currency": "NGN",
        "product_kind": "share",
        "occurred_at": "2026-06-01T12:00:00Z",
    }
    payload.update(overrides)
    return payload


class TestPurchaseEventNormalization:
    """Legacy spellings map onto canonical values."""

    @pytest.mark.parametrize("raw", ["NGN", "ngn", "naira", " Naira "])
    def test_currency_aliases(self, raw):
        """Naira spellings become NGN."""
        assert PurchaseEvent(**_payload(currency=raw)).currency == "NGN"

    @pytest.mark.parametrize(
        "raw,expected",
        [("share", "share"), ("user_share", "share"), ("CoFounder", "cofounder"),
         ("co-founder", "cofounder")],
    )
    def test_product_kind_aliases(self, raw, expected):
        """Product spellings collapse to share or cofounder."""
        assert PurchaseEvent(**_payload(product_kind=raw)).product_kind == expected

    def test_amount_parsed_as_decimal(self):
        """String amounts become Decimal exactly."""
        assert PurchaseEvent(**_payload(amount="1234.56")).amount == Decimal("1234.56")

    def test_occurred_at_converted_to_utc(self):
        """Offsets are normalized to UTC."""
        lagos = timezone(timedelta(hours=1))
        event = PurchaseEvent(**_payload(occurred_at=datetime(2026, 6, 1, 13, 0, tzinfo=lagos)))
        assert event.occurred_at == datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)
        assert event.occurred_at.utcoffset() == timedelta(0)

    @pytest.mark.parametrize(
        "amount,currency",
        [("1500.00", "NGN"), ("1500.000", "NGN"), ("0.00000001", "USDT"), ("9999999999999999.99", "NGN")],
    )
    def test_amount_at_storage_limits(self, amount, currency):
        """Amounts that fit the currency unit and the money column are kept."""
        event = PurchaseEvent(**_payload(amount=amount, currency=currency))
        assert event.amount == Decimal(amount)

    def test_event_is_frozen(self):
        """Accepted events are immutable."""
        event = PurchaseEvent(**_payload())
        with pytest.raises(ValidationError):
            event.amount = Decimal("1")


class TestPurchaseEventRejection:
    """Malformed events fail construction."""

    @pytest.mark.parametrize(
        "field,value",
        [
            ("amount", -1),
            ("amount", 10.5),
            ("amount", "abc"),
            ("amount", "NaN"),
            ("currency", "EUR"),
            ("currency", ""),
            ("product_kind", "bond"),
            ("event_id", ""),
            ("purchaser_id", ""),
        ],
    )
    def test_invalid_field(self, field, value):
        """Each bad field is rejected."""
        with pytest.raises(ValidationError):
            PurchaseEvent(**_payload(**{field: value}))

    def test_missing_occurred_at(self):
        """Event time is required."""
        payload = _payload()
        del payload["occurred_at"]
        with pytest.raises(ValidationError):
            PurchaseEvent(**payload)

    @pytest.mark.parametrize(
        "amount,currency",
        [
            ("10000.005", "NGN"),
            ("0.000000099", "USDT"),
            ("1E-9", "USDT"),
            ("10000000000000000", "NGN"),
            ("1E+16", "USDT"),
        ],
    )
    def test_amount_beyond_storage_limits(self, amount, currency):
        """Amounts the events log cannot hold exactly are refused."""
        with pytest.raises(ValidationError):
            PurchaseEvent(**_payload(amount=amount, currency=currency))
