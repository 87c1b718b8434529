from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.models.enums import CommissionType
from app.services.commission import (
    calculate_commission,
    compute_commission_amount_cents,
    compute_payable_at,
    normalize_percent,
)


# ---------------------------------------------------------------------------
# Per-referral cents model
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "price, value, expected",
    [
        (10000, 15, 1500),
        (10000, Decimal("0.15"), 1500),
        (10000, 0.15, 1500),
        (299, 15, 44),
        (999, Decimal("0.25"), 249),
    ],
)
def test_percent_commission_floors_to_cent(price, value, expected):
    """PERCENT commissions accept both 15 and 0.15 and round down."""
    assert compute_commission_amount_cents(price, CommissionType.PERCENT, value) == expected


def test_percent_commission_accepts_string_type():
    assert compute_commission_amount_cents(10000, "PERCENT", "10") == 1000


@pytest.mark.parametrize("price", [0, -500, None])
def test_non_positive_price_earns_nothing(price):
    assert compute_commission_amount_cents(price, CommissionType.PERCENT, 15) == 0
    assert compute_commission_amount_cents(price, CommissionType.FIXED, 500) == 0


def test_fixed_commission_rounds_half_up():
    assert compute_commission_amount_cents(10000, CommissionType.FIXED, Decimal("500.5")) == 501
    assert compute_commission_amount_cents(10000, CommissionType.FIXED, Decimal("500.4")) == 500


def test_fixed_commission_never_negative():
    assert compute_commission_amount_cents(10000, CommissionType.FIXED, -50) == 0


def test_normalize_percent():
    assert normalize_percent(15) == Decimal("0.15")
    assert normalize_percent(Decimal("0.15")) == Decimal("0.15")
    assert normalize_percent(1) == Decimal("1")


def test_compute_payable_at():
    qualified_at = datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert compute_payable_at(qualified_at, 30) == qualified_at + timedelta(days=30)
    assert compute_payable_at(qualified_at, 0) == qualified_at
    assert compute_payable_at(None, 30) is None


# ---------------------------------------------------------------------------
# Platform-default tiered model
# ---------------------------------------------------------------------------


def test_tiered_initial_default_rate():
    assert calculate_commission(Decimal("100"), is_initial=True) == Decimal("25.00")


def test_tiered_recurring_default_rate():
    assert calculate_commission(Decimal("50"), is_initial=False) == Decimal("5.00")


def test_tiered_initial_at_fifteen_percent():
    assert calculate_commission(100, is_initial=True, initial_rate=Decimal("0.15")) == Decimal("15.00")


def test_tiered_truncates_before_minimum():
    """0.125 truncates to 0.12 rather than rounding up to 0.13."""
    assert calculate_commission(Decimal("0.50"), is_initial=True) == Decimal("0.12")


def test_tiered_truncation_at_fifteen_percent():
    """0.075 truncates to 0.07; it is already above the 0.01 minimum."""
    result = calculate_commission(Decimal("0.50"), is_initial=True, initial_rate=Decimal("0.15"))
    assert result == Decimal("0.07")


def test_tiered_minimum_applies_after_truncation():
    """0.005 truncates to 0.00, then the 0.01 minimum kicks in."""
    assert calculate_commission(Decimal("0.05"), is_initial=False) == Decimal("0.01")


@pytest.mark.parametrize("amount", [0, Decimal("0"), Decimal("-10")])
def test_tiered_non_positive_amount_earns_nothing(amount):
    assert calculate_commission(amount, is_initial=True) == Decimal("0.00")


def test_tiered_float_input_is_exact():
    # 0.1 * 3 as a float would be 0.30000000000000004
    assert calculate_commission(0.3, is_initial=False, recurring_rate=Decimal("1")) == Decimal("0.30")
