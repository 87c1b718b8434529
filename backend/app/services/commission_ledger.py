"""Per-payment commission ledger at the tiered platform rates.

Every successful payment of a referred user earns its referrer one ledger
entry, keyed by (payment_id, referral_id) so that redelivered payment events
are absorbed. This runs beside the hold-window commission on the referral row.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.metrics import COMMISSIONS_RECORDED
from app.models.commission import ReferralCommission
from app.models.enums import CommissionStatus, ReferralStatus
from app.models.referral import Referral
from app.services.commission import calculate_commission
from app.utils.dates import utcnow

logger = structlog.get_logger()

NOT_REFERRED_ERROR = "User was not referred"


@dataclass
class CommissionResult:
    success: bool
    commission_id: uuid.UUID | None = None
    error: str | None = None


async def _find_commission(
    db: AsyncSession, referral_id: uuid.UUID, payment_id: str
) -> ReferralCommission | None:
    result = await db.execute(
        select(ReferralCommission).where(
            ReferralCommission.referral_id == referral_id,
            ReferralCommission.payment_id == payment_id,
        )
    )
    return result.scalar_one_or_none()


async def record_payment_commission(
    db: AsyncSession,
    user_id: uuid.UUID,
    payment_id: str,
    payment_amount_cents: int,
    currency: str,
    is_initial: bool,
) -> CommissionResult:
    """Record the referrer's tiered commission for one payment, at most once."""
    if not settings.REFERRAL_SYSTEM_ENABLED:
        return CommissionResult(success=False, error="Referral system is disabled")

    result = await db.execute(select(Referral).where(Referral.referred_user_id == user_id))
    referral = result.scalar_one_or_none()
    if referral is None or referral.status == ReferralStatus.VOID:
        return CommissionResult(success=False, error=NOT_REFERRED_ERROR)

    existing = await _find_commission(db, referral.id, payment_id)
    if existing is not None:
        logger.info("commission_already_recorded", commission_id=str(existing.id), payment_id=payment_id)
        return CommissionResult(success=True, commission_id=existing.id)

    rate = (
        settings.REFERRAL_INITIAL_COMMISSION_RATE
        if is_initial
        else settings.REFERRAL_RECURRING_COMMISSION_RATE
    )
    amount = calculate_commission(
        Decimal(payment_amount_cents) / 100,
        is_initial,
        initial_rate=settings.REFERRAL_INITIAL_COMMISSION_RATE,
        recurring_rate=settings.REFERRAL_RECURRING_COMMISSION_RATE,
    )
    commission = ReferralCommission(
        referral_id=referral.id,
        referrer_id=referral.referrer_id,
        payment_id=payment_id,
        payment_amount_cents=payment_amount_cents,
        amount=amount,
        rate=rate,
        currency=(currency or referral.currency).lower(),
        is_initial=is_initial,
        status=CommissionStatus.PENDING,
    )
    try:
        async with db.begin_nested():
            db.add(commission)
    except IntegrityError:
        existing = await _find_commission(db, referral.id, payment_id)
        if existing is None:
            raise
        logger.info("commission_race_lost", commission_id=str(existing.id), payment_id=payment_id)
        return CommissionResult(success=True, commission_id=existing.id)

    COMMISSIONS_RECORDED.labels(payment_type="initial" if is_initial else "recurring").inc()
    logger.info(
        "commission_recorded",
        commission_id=str(commission.id),
        referral_id=str(referral.id),
        referrer_id=str(referral.referrer_id),
        payment_id=payment_id,
        amount=str(amount),
        rate=str(rate),
        is_initial=is_initial,
    )
    return CommissionResult(success=True, commission_id=commission.id)


async def void_pending_commissions(db: AsyncSession, referral_id: uuid.UUID) -> int:
    result = await db.execute(
        update(ReferralCommission)
        .where(
            ReferralCommission.referral_id == referral_id,
            ReferralCommission.status == CommissionStatus.PENDING.value,
        )
        .values(status=CommissionStatus.VOID.value)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


async def settle_pending_commissions(
    db: AsyncSession, referral_ids: list[uuid.UUID], paid_at: datetime
) -> int:
    if not referral_ids:
        return 0
    result = await db.execute(
        update(ReferralCommission)
        .where(
            ReferralCommission.referral_id.in_(referral_ids),
            ReferralCommission.status == CommissionStatus.PENDING.value,
        )
        .values(status=CommissionStatus.PAID.value, paid_at=paid_at)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


async def list_commissions_for_referrer(
    db: AsyncSession,
    referrer_id: uuid.UUID,
    status: CommissionStatus | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[ReferralCommission], int]:
    where = [ReferralCommission.referrer_id == referrer_id]
    if status is not None:
        where.append(ReferralCommission.status == status.value)

    rows = await db.execute(
        select(ReferralCommission)
        .where(*where)
        .order_by(ReferralCommission.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    total = await db.execute(select(func.count()).select_from(ReferralCommission).where(*where))
    return list(rows.scalars().all()), total.scalar_one()


async def get_commission_totals(db: AsyncSession, referrer_id: uuid.UUID) -> dict[str, Decimal]:
    result = await db.execute(
        select(ReferralCommission.status, func.coalesce(func.sum(ReferralCommission.amount), 0))
        .where(ReferralCommission.referrer_id == referrer_id)
        .group_by(ReferralCommission.status)
    )
    sums = {status: Decimal(str(total)) for status, total in result.all()}
    return {
        "pending": sums.get(CommissionStatus.PENDING.value, Decimal("0.00")).quantize(Decimal("0.01")),
        "paid": sums.get(CommissionStatus.PAID.value, Decimal("0.00")).quantize(Decimal("0.01")),
    }
