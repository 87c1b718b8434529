"""Commission arithmetic for the referral program.

Two rate models coexist:

* the hold-aware per-referral model (``compute_commission_amount_cents``), which
  works in integer cents and floors PERCENT commissions so the platform never
  owes more than the exact percentage;
* the platform-default tiered model (``calculate_commission``), 25% on the
  first payment and 10% on renewals, truncated to the cent with a 0.01 minimum.

All functions are pure.
"""
from datetime import datetime, timedelta
from decimal import ROUND_DOWN, ROUND_FLOOR, ROUND_HALF_UP, Decimal

from app.models.enums import CommissionType

TIERED_INITIAL_RATE = Decimal("0.25")
TIERED_RECURRING_RATE = Decimal("0.10")
MINIMUM_COMMISSION = Decimal("0.01")
_CENT = Decimal("0.01")


def _to_decimal(value: Decimal | int | float | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() first so 0.15 becomes Decimal("0.15"), not its binary expansion
    return Decimal(str(value))


def normalize_percent(value: Decimal | int | float | str) -> Decimal:
    """Values above 1 are percentages (15 -> 0.15); others are already fractions."""
    value = _to_decimal(value)
    return value / 100 if value > 1 else value


def compute_commission_amount_cents(
    plan_price_cents: int,
    commission_type: CommissionType | str,
    commission_value: Decimal | int | float | str,
) -> int:
    """Commission in cents for one qualifying payment."""
    if not plan_price_cents or plan_price_cents <= 0:
        return 0

    value = _to_decimal(commission_value)
    if CommissionType(commission_type) == CommissionType.FIXED:
        # FIXED values are already expressed in cents
        return max(0, int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP)))

    fraction = normalize_percent(value)
    raw = Decimal(plan_price_cents) * fraction
    return max(0, int(raw.to_integral_value(rounding=ROUND_FLOOR)))


def compute_payable_at(qualified_at: datetime | None, hold_days: int) -> datetime | None:
    """End of the clawback hold window, or None if the referral never qualified."""
    if qualified_at is None:
        return None
    return qualified_at + timedelta(days=hold_days)


def calculate_commission(
    payment_amount: Decimal | int | float | str,
    is_initial: bool,
    initial_rate: Decimal | None = None,
    recurring_rate: Decimal | None = None,
) -> Decimal:
    """Tiered commission in currency units, truncated to the cent.

    The amount is truncated first; the 0.01 minimum only applies afterwards,
    and only when the payment itself is positive. Non-positive payments earn
    nothing.
    """
    amount = _to_decimal(payment_amount)
    if amount <= 0:
        return Decimal("0.00")

    if is_initial:
        rate = _to_decimal(initial_rate) if initial_rate is not None else TIERED_INITIAL_RATE
    else:
        rate = _to_decimal(recurring_rate) if recurring_rate is not None else TIERED_RECURRING_RATE

    commission = (amount * rate).quantize(_CENT, rounding=ROUND_DOWN)
    return max(commission, MINIMUM_COMMISSION)
