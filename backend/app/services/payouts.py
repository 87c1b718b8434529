"""Affiliate payout batches: settle a referrer's PAYABLE commissions together.

A batch is created READY from the referrer's payable, unbatched referrals. It
sums their ``commission_amount_cents`` in a single currency. Marking the batch
PAID settles every referral in it; cancelling releases them for a later batch.
"""
import csv
import io
import uuid
from datetime import datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.metrics import PAYOUT_BATCHES
from app.models.enums import PayoutBatchStatus, ReferralStatus
from app.models.payout_batch import AffiliatePayoutBatch
from app.models.referral import Referral
from app.models.user import User
from app.services.commission_ledger import settle_pending_commissions
from app.utils.dates import ensure_utc, utcnow

logger = structlog.get_logger()

OPEN_BATCH_STATUSES = (PayoutBatchStatus.DRAFT, PayoutBatchStatus.READY)

CSV_HEADER = [
    "Affiliate Name",
    "Affiliate Email",
    "Referral Id",
    "Referred Name",
    "Referred Email",
    "Status",
    "Signed Up At",
    "Qualified At",
    "Payable At",
    "Paid At",
    "Commission Amount",
    "Currency",
]


class PayoutBatchError(Exception):
    pass


class PayoutBatchNotFoundError(PayoutBatchError):
    pass


class PayoutBatchStateError(PayoutBatchError):
    pass


async def get_payout_batch(db: AsyncSession, batch_id: uuid.UUID) -> AffiliatePayoutBatch:
    batch = await db.get(AffiliatePayoutBatch, batch_id)
    if batch is None:
        raise PayoutBatchNotFoundError(f"Payout batch {batch_id} not found")
    return batch


async def get_batch_referrals(db: AsyncSession, batch_id: uuid.UUID) -> list[Referral]:
    result = await db.execute(
        select(Referral)
        .where(Referral.payout_batch_id == batch_id)
        .order_by(Referral.payable_at.asc())
    )
    return list(result.scalars().all())


async def create_payout_batch(
    db: AsyncSession,
    referrer_id: uuid.UUID,
    referral_ids: list[uuid.UUID] | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> AffiliatePayoutBatch:
    """Group the referrer's payable, unbatched referrals into a READY batch."""
    now = now or utcnow()
    query = select(Referral).where(
        Referral.referrer_id == referrer_id,
        Referral.referred_user_id.isnot(None),
        Referral.payout_batch_id.is_(None),
        Referral.commission_amount_cents.isnot(None),
        Referral.paid_at.is_(None),
        Referral.status != ReferralStatus.VOID.value,
        Referral.payable_at <= now,
    )
    if referral_ids:
        query = query.where(Referral.id.in_(referral_ids))
    result = await db.execute(query.with_for_update())
    referrals = list(result.scalars().all())

    if not referrals:
        raise PayoutBatchError("No payable referrals found")

    currency = referrals[0].currency
    if any(referral.currency != currency for referral in referrals):
        raise PayoutBatchError("Mixed currencies not supported in a single payout batch")

    batch = AffiliatePayoutBatch(
        referrer_id=referrer_id,
        status=PayoutBatchStatus.READY,
        total_amount_cents=sum(referral.commission_amount_cents or 0 for referral in referrals),
        currency=currency,
        due_at=max(ensure_utc(referral.payable_at) for referral in referrals),
        notes=notes,
    )
    db.add(batch)
    await db.flush()

    # Conditional on payout_batch_id so a concurrent batch cannot claim the same referral
    stamped = await db.execute(
        update(Referral)
        .where(Referral.id.in_([r.id for r in referrals]), Referral.payout_batch_id.is_(None))
        .values(payout_batch_id=batch.id, status=ReferralStatus.PAYABLE.value)
        .execution_options(synchronize_session=False)
    )
    if stamped.rowcount != len(referrals):
        raise PayoutBatchStateError("Referrals were claimed by another payout batch")
    for referral in referrals:
        referral.payout_batch_id = batch.id
        referral.status = ReferralStatus.PAYABLE

    PAYOUT_BATCHES.labels(status=PayoutBatchStatus.READY.value).inc()
    logger.info(
        "payout_batch_created",
        batch_id=str(batch.id),
        referrer_id=str(referrer_id),
        referrals=len(referrals),
        total_amount_cents=batch.total_amount_cents,
        currency=currency,
    )
    return batch


async def mark_payout_batch_paid(
    db: AsyncSession,
    batch_id: uuid.UUID,
    paid_by_user_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> AffiliatePayoutBatch:
    """Record the transfer of a batch and settle every referral in it. Idempotent."""
    now = now or utcnow()
    batch = await get_payout_batch(db, batch_id)
    if batch.status == PayoutBatchStatus.PAID:
        logger.info("payout_batch_already_paid", batch_id=str(batch_id))
        return batch
    if batch.status == PayoutBatchStatus.CANCELLED:
        raise PayoutBatchStateError("Cancelled payout batches cannot be paid")

    referrals = await get_batch_referrals(db, batch_id)
    for referral in referrals:
        referral.paid_at = now
        referral.paid_by_user_id = paid_by_user_id
        referral.status = ReferralStatus.PAID
    await settle_pending_commissions(db, [referral.id for referral in referrals], now)

    batch.status = PayoutBatchStatus.PAID
    batch.paid_at = now
    batch.paid_by_user_id = paid_by_user_id
    await db.flush()

    PAYOUT_BATCHES.labels(status=PayoutBatchStatus.PAID.value).inc()
    logger.info(
        "payout_batch_paid",
        batch_id=str(batch_id),
        referrals=len(referrals),
        total_amount_cents=batch.total_amount_cents,
    )
    return batch


async def cancel_payout_batch(db: AsyncSession, batch_id: uuid.UUID) -> AffiliatePayoutBatch:
    """Cancel an open batch and release its referrals for a later one."""
    batch = await get_payout_batch(db, batch_id)
    if batch.status == PayoutBatchStatus.CANCELLED:
        return batch
    if batch.status == PayoutBatchStatus.PAID:
        raise PayoutBatchStateError("Paid payout batches cannot be cancelled")

    for referral in await get_batch_referrals(db, batch_id):
        referral.payout_batch_id = None
    batch.status = PayoutBatchStatus.CANCELLED
    await db.flush()

    PAYOUT_BATCHES.labels(status=PayoutBatchStatus.CANCELLED.value).inc()
    logger.info("payout_batch_cancelled", batch_id=str(batch_id))
    return batch


async def detach_referral_from_batch(db: AsyncSession, referral: Referral) -> None:
    """Take a voided referral out of its open batch and shrink the batch total."""
    if referral.payout_batch_id is None:
        return
    batch = await db.get(AffiliatePayoutBatch, referral.payout_batch_id)
    if batch is not None and batch.status in OPEN_BATCH_STATUSES:
        batch.total_amount_cents = max(0, batch.total_amount_cents - (referral.commission_amount_cents or 0))
        logger.info(
            "payout_batch_referral_detached",
            batch_id=str(batch.id),
            referral_id=str(referral.id),
            total_amount_cents=batch.total_amount_cents,
        )
    referral.payout_batch_id = None


def _iso(value: datetime | None) -> str:
    return ensure_utc(value).isoformat() if value else ""


async def export_payout_batch_csv(db: AsyncSession, batch_id: uuid.UUID) -> str:
    """Render a batch as CSV for the payment provider's bulk transfer upload."""
    batch = await get_payout_batch(db, batch_id)
    referrer = await db.get(User, batch.referrer_id)

    result = await db.execute(
        select(Referral, User.name, User.email)
        .outerjoin(User, User.id == Referral.referred_user_id)
        .where(Referral.payout_batch_id == batch_id)
        .order_by(Referral.payable_at.asc())
    )

    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for referral, referred_name, referred_email in result.all():
        amount = referral.commission_amount_cents
        writer.writerow([
            (referrer.name or "") if referrer else "",
            referrer.email if referrer else "",
            str(referral.id),
            referred_name or "",
            referred_email or "",
            ReferralStatus(referral.status).value,
            _iso(referral.signed_up_at),
            _iso(referral.qualified_at),
            _iso(referral.payable_at),
            _iso(referral.paid_at),
            f"{amount / 100:.2f}" if amount is not None else "",
            referral.currency,
        ])

    logger.info("payout_batch_exported", batch_id=str(batch_id))
    return output.getvalue()
