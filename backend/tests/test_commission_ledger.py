from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.commission import ReferralCommission
from app.models.enums import CommissionStatus
from app.models.user import User
from app.services.commission_ledger import (
    NOT_REFERRED_ERROR,
    get_commission_totals,
    list_commissions_for_referrer,
    record_payment_commission,
)
from app.services.referral_lifecycle import (
    link_referral_to_user,
    mark_referral_paid,
    mark_referral_qualified_from_payment,
    void_referral_if_in_hold,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


async def _link(db: AsyncSession, referred: User):
    result = await link_referral_to_user(db, "alice", referred.id, now=NOW)
    assert result.success is True
    return result.referral_id


async def _commission(db: AsyncSession, commission_id) -> ReferralCommission:
    result = await db.execute(
        select(ReferralCommission)
        .where(ReferralCommission.id == commission_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def _count(db: AsyncSession, referral_id) -> int:
    result = await db.execute(
        select(func.count()).select_from(ReferralCommission).where(ReferralCommission.referral_id == referral_id)
    )
    return result.scalar_one()


@pytest.mark.asyncio
async def test_initial_payment_earns_initial_rate(db: AsyncSession, referrer: User, referred: User):
    referral_id = await _link(db, referred)

    result = await record_payment_commission(
        db, referred.id, payment_id="in_001", payment_amount_cents=4900, currency="USD", is_initial=True
    )

    assert result.success is True
    commission = await _commission(db, result.commission_id)
    assert commission.referral_id == referral_id
    assert commission.referrer_id == referrer.id
    assert commission.amount == Decimal("12.25")
    assert commission.rate == Decimal("0.25")
    assert commission.currency == "usd"
    assert commission.is_initial is True
    assert commission.status == CommissionStatus.PENDING.value


@pytest.mark.asyncio
async def test_recurring_payment_earns_recurring_rate(db: AsyncSession, referrer: User, referred: User):
    await _link(db, referred)

    result = await record_payment_commission(
        db, referred.id, payment_id="in_002", payment_amount_cents=4999, currency="usd", is_initial=False
    )

    commission = await _commission(db, result.commission_id)
    # 4.999 truncates to the cent
    assert commission.amount == Decimal("4.99")
    assert commission.rate == Decimal("0.10")


@pytest.mark.asyncio
async def test_tiny_payment_earns_minimum(db: AsyncSession, referrer: User, referred: User):
    await _link(db, referred)

    result = await record_payment_commission(
        db, referred.id, payment_id="in_003", payment_amount_cents=1, currency="usd", is_initial=False
    )

    assert (await _commission(db, result.commission_id)).amount == Decimal("0.01")


@pytest.mark.asyncio
async def test_redelivered_payment_is_recorded_once(db: AsyncSession, referrer: User, referred: User):
    referral_id = await _link(db, referred)

    first = await record_payment_commission(
        db, referred.id, payment_id="in_001", payment_amount_cents=4900, currency="usd", is_initial=True
    )
    second = await record_payment_commission(
        db, referred.id, payment_id="in_001", payment_amount_cents=4900, currency="usd", is_initial=True
    )

    assert second.success is True
    assert second.commission_id == first.commission_id
    assert await _count(db, referral_id) == 1


@pytest.mark.asyncio
async def test_each_payment_earns_its_own_entry(db: AsyncSession, referrer: User, referred: User):
    referral_id = await _link(db, referred)

    for index, is_initial in enumerate([True, False, False]):
        await record_payment_commission(
            db, referred.id, payment_id=f"in_{index}", payment_amount_cents=4900, currency="usd", is_initial=is_initial
        )

    assert await _count(db, referral_id) == 3
    totals = await get_commission_totals(db, referrer.id)
    assert totals == {"pending": Decimal("22.05"), "paid": Decimal("0.00")}


@pytest.mark.asyncio
async def test_payment_of_unreferred_user(db: AsyncSession, referred: User):
    result = await record_payment_commission(
        db, referred.id, payment_id="in_001", payment_amount_cents=4900, currency="usd", is_initial=True
    )

    assert result.success is False
    assert result.error == NOT_REFERRED_ERROR


@pytest.mark.asyncio
async def test_voided_referral_earns_nothing(db: AsyncSession, referrer: User, referred: User):
    referral_id = await _link(db, referred)
    await void_referral_if_in_hold(db, referred.id, NOW, "trial_cancelled")

    result = await record_payment_commission(
        db, referred.id, payment_id="in_001", payment_amount_cents=4900, currency="usd", is_initial=True
    )

    assert result.success is False
    assert await _count(db, referral_id) == 0


@pytest.mark.asyncio
async def test_ledger_disabled(db: AsyncSession, referrer: User, referred: User):
    await _link(db, referred)

    with patch.object(settings, "REFERRAL_SYSTEM_ENABLED", False):
        result = await record_payment_commission(
            db, referred.id, payment_id="in_001", payment_amount_cents=4900, currency="usd", is_initial=True
        )

    assert result.success is False
    assert result.error == "Referral system is disabled"


@pytest.mark.asyncio
async def test_clawback_voids_pending_entries(db: AsyncSession, referrer: User, referred: User):
    await _link(db, referred)
    await mark_referral_qualified_from_payment(
        db, referred.id, paid_at=NOW, plan_price_cents=4900, currency="usd", is_initial=True, now=NOW
    )
    result = await record_payment_commission(
        db, referred.id, payment_id="in_001", payment_amount_cents=4900, currency="usd", is_initial=True
    )

    assert await void_referral_if_in_hold(db, referred.id, NOW + timedelta(days=3), "refund") is True

    assert (await _commission(db, result.commission_id)).status == CommissionStatus.VOID.value
    totals = await get_commission_totals(db, referrer.id)
    assert totals == {"pending": Decimal("0.00"), "paid": Decimal("0.00")}


@pytest.mark.asyncio
async def test_payout_settles_pending_entries(db: AsyncSession, referrer: User, referred: User):
    referral_id = await _link(db, referred)
    await mark_referral_qualified_from_payment(
        db, referred.id, paid_at=NOW, plan_price_cents=4900, currency="usd", is_initial=True, now=NOW
    )
    result = await record_payment_commission(
        db, referred.id, payment_id="in_001", payment_amount_cents=4900, currency="usd", is_initial=True
    )
    payout_at = NOW + timedelta(days=31)

    await mark_referral_paid(db, referral_id, now=payout_at)

    commission = await _commission(db, result.commission_id)
    assert commission.status == CommissionStatus.PAID.value
    assert commission.paid_at.replace(tzinfo=timezone.utc) == payout_at
    totals = await get_commission_totals(db, referrer.id)
    assert totals == {"pending": Decimal("0.00"), "paid": Decimal("12.25")}


@pytest.mark.asyncio
async def test_list_commissions_filters_by_status(db: AsyncSession, referrer: User, referred: User):
    await _link(db, referred)
    for index in range(3):
        await record_payment_commission(
            db, referred.id, payment_id=f"in_{index}", payment_amount_cents=4900, currency="usd", is_initial=False
        )

    rows, total = await list_commissions_for_referrer(db, referrer.id, limit=2)
    assert total == 3
    assert len(rows) == 2

    rows, total = await list_commissions_for_referrer(db, referrer.id, status=CommissionStatus.PAID)
    assert (rows, total) == ([], 0)
