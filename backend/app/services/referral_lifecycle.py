"""Referral lifecycle: attribution, trial, qualification, clawback and payout.

Status is derived from timestamps by ``derive_referral_status``; the stored
``status`` column is a cache rewritten in the same flush as the timestamp that
changed it. VOID is the one terminal flag that is stored rather than derived.

Every mutator checks its terminal / already-set conditions before writing, so
repeated delivery of the same billing signal is a no-op after the first.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.metrics import REFERRAL_LINK_REJECTED, REFERRALS_LINKED, REFERRALS_QUALIFIED, REFERRALS_VOIDED
from app.models.enums import CommissionType, MembershipStatus, ReferralCodeStatus, ReferralStatus
from app.models.membership import Membership
from app.models.referral import Referral
from app.services.commission import compute_commission_amount_cents, compute_payable_at
from app.services.commission_ledger import settle_pending_commissions, void_pending_commissions
from app.services.payouts import detach_referral_from_batch
from app.services.referral_codes import validate_referral_code
from app.utils.dates import ensure_utc, utcnow

logger = structlog.get_logger()

ALREADY_LINKED_ERROR = "This account is already linked to a referral"
SELF_REFERRAL_ERROR = "You cannot use your own referral code"


@dataclass
class LinkResult:
    success: bool
    referral_id: uuid.UUID | None = None
    error: str | None = None


def derive_referral_status(
    referral: Referral,
    membership_status: str | None,
    now: datetime,
) -> ReferralStatus:
    """First match wins: VOID, PAID, PAYABLE, QUALIFIED, TRIAL, SIGNED_UP, PENDING."""
    if referral.status == ReferralStatus.VOID:
        return ReferralStatus.VOID
    if referral.paid_at:
        return ReferralStatus.PAID
    payable_at = ensure_utc(referral.payable_at)
    if payable_at and payable_at <= now:
        return ReferralStatus.PAYABLE
    if referral.qualified_at:
        return ReferralStatus.QUALIFIED
    if referral.trial_started_at or membership_status == MembershipStatus.TRIAL:
        return ReferralStatus.TRIAL
    if referral.signed_up_at:
        return ReferralStatus.SIGNED_UP
    return ReferralStatus.PENDING


async def _get_referral_for_user(db: AsyncSession, user_id: uuid.UUID) -> Referral | None:
    result = await db.execute(select(Referral).where(Referral.referred_user_id == user_id))
    return result.scalar_one_or_none()


async def _get_membership_status(db: AsyncSession, user_id: uuid.UUID | None) -> str | None:
    if user_id is None:
        return None
    result = await db.execute(select(Membership.status).where(Membership.user_id == user_id))
    return result.scalar_one_or_none()


async def _refresh_status(db: AsyncSession, referral: Referral, now: datetime) -> ReferralStatus:
    membership_status = await _get_membership_status(db, referral.referred_user_id)
    referral.status = derive_referral_status(referral, membership_status, now)
    return referral.status


def _is_paid(referral: Referral) -> bool:
    return referral.paid_at is not None or referral.status == ReferralStatus.PAID


async def link_referral_to_user(
    db: AsyncSession,
    code: str,
    user_id: uuid.UUID,
    now: datetime | None = None,
) -> LinkResult:
    """Attribute a freshly signed-up user to the owner of ``code``.

    Inserts a new attribution row; the master template is never modified, so
    concurrent signups on one code do not contend with each other.
    """
    now = now or utcnow()

    validation = await validate_referral_code(db, code, now)
    if not validation.valid or validation.referral is None:
        REFERRAL_LINK_REJECTED.labels(reason="invalid_code").inc()
        logger.info("referral_link_rejected", reason="invalid_code", user_id=str(user_id), error=validation.error)
        return LinkResult(success=False, error=validation.error or "Invalid referral code")

    referrer_id = validation.referral.referrer_id
    if referrer_id == user_id:
        REFERRAL_LINK_REJECTED.labels(reason="self_referral").inc()
        logger.info("referral_link_rejected", reason="self_referral", user_id=str(user_id))
        return LinkResult(success=False, error=SELF_REFERRAL_ERROR)

    if await _get_referral_for_user(db, user_id) is not None:
        REFERRAL_LINK_REJECTED.labels(reason="already_linked").inc()
        logger.info("referral_link_rejected", reason="already_linked", user_id=str(user_id))
        return LinkResult(success=False, error=ALREADY_LINKED_ERROR)

    referral = Referral(
        referrer_id=referrer_id,
        referral_code=code.strip(),
        referred_user_id=user_id,
        code_status=ReferralCodeStatus.PENDING,
        status=ReferralStatus.SIGNED_UP,
        signed_up_at=now,
        expires_at=None,
    )
    try:
        # Savepoint: a concurrent signup for the same user loses on the unique
        # referred_user_id without rolling back the caller's transaction
        async with db.begin_nested():
            db.add(referral)
    except IntegrityError:
        REFERRAL_LINK_REJECTED.labels(reason="already_linked").inc()
        logger.info("referral_link_race_lost", user_id=str(user_id), referrer_id=str(referrer_id))
        return LinkResult(success=False, error=ALREADY_LINKED_ERROR)

    await _refresh_status(db, referral, now)
    await db.flush()

    REFERRALS_LINKED.inc()
    logger.info(
        "referral_linked",
        referral_id=str(referral.id),
        referrer_id=str(referrer_id),
        referred_user_id=str(user_id),
        referral_code=referral.referral_code,
    )
    return LinkResult(success=True, referral_id=referral.id)


async def mark_referral_trial(
    db: AsyncSession,
    user_id: uuid.UUID,
    trial_started_at: datetime,
    trial_ends_at: datetime | None = None,
    now: datetime | None = None,
) -> Referral | None:
    referral = await _get_referral_for_user(db, user_id)
    if referral is None:
        return None
    if referral.status == ReferralStatus.VOID:
        logger.info("referral_trial_skipped", user_id=str(user_id), reason="void")
        return None

    referral.trial_started_at = trial_started_at
    referral.trial_ends_at = trial_ends_at or referral.trial_ends_at
    status = await _refresh_status(db, referral, now or utcnow())
    await db.flush()

    logger.info("referral_trial_marked", referral_id=str(referral.id), user_id=str(user_id), status=status.value)
    return referral


async def mark_referral_qualified_from_payment(
    db: AsyncSession,
    user_id: uuid.UUID,
    paid_at: datetime,
    plan_price_cents: int,
    currency: str,
    is_initial: bool,
    now: datetime | None = None,
) -> Referral | None:
    """Start the commission clock from a successful payment.

    Qualification terms are first-write-wins: once recorded, a duplicate or
    later payment event can never alter them.
    """
    referral = await _get_referral_for_user(db, user_id)
    if referral is None:
        return None
    if referral.status == ReferralStatus.VOID or _is_paid(referral):
        logger.info("referral_qualification_skipped", user_id=str(user_id), status=referral.status)
        return None
    if referral.qualified_at and referral.first_paid_at:
        logger.info("referral_already_qualified", referral_id=str(referral.id), user_id=str(user_id))
        return None

    hold_days = referral.hold_days if referral.hold_days is not None else settings.REFERRAL_HOLD_DAYS
    qualified_at = ensure_utc(referral.qualified_at) or paid_at
    commission_type = referral.commission_type or CommissionType.PERCENT
    if referral.commission_value is not None:
        commission_value = Decimal(referral.commission_value)
    elif is_initial:
        commission_value = settings.REFERRAL_INITIAL_COMMISSION_RATE
    else:
        commission_value = settings.REFERRAL_RECURRING_COMMISSION_RATE

    if referral.commission_amount_cents is None:
        referral.commission_amount_cents = compute_commission_amount_cents(
            plan_price_cents, commission_type, commission_value
        )
    referral.first_paid_at = referral.first_paid_at or paid_at
    referral.qualified_at = qualified_at
    referral.commission_type = commission_type
    referral.commission_value = commission_value
    referral.currency = (currency or referral.currency).lower()
    referral.hold_days = hold_days
    referral.payable_at = referral.payable_at or compute_payable_at(qualified_at, hold_days)

    status = await _refresh_status(db, referral, now or utcnow())
    await db.flush()

    REFERRALS_QUALIFIED.labels(payment_type="initial" if is_initial else "recurring").inc()
    logger.info(
        "referral_qualified",
        referral_id=str(referral.id),
        user_id=str(user_id),
        commission_amount_cents=referral.commission_amount_cents,
        currency=referral.currency,
        payable_at=ensure_utc(referral.payable_at).isoformat(),
        status=status.value,
    )
    return referral


async def void_referral_if_in_hold(
    db: AsyncSession,
    user_id: uuid.UUID,
    occurred_at: datetime,
    reason: str,
) -> bool:
    """Claw back a commission when the referred user churns during the hold.

    Voids when the referral never qualified or ``occurred_at`` is before
    ``payable_at``. Churn at or after ``payable_at`` leaves the earned
    commission untouched. Returns True when the referral was voided.
    """
    referral = await _get_referral_for_user(db, user_id)
    if referral is None:
        return False
    if referral.status == ReferralStatus.VOID or _is_paid(referral):
        logger.info("referral_void_skipped", user_id=str(user_id), status=referral.status)
        return False

    payable_at = ensure_utc(referral.payable_at)
    before_qualification = referral.qualified_at is None
    within_hold = occurred_at < payable_at if payable_at else True

    if not (before_qualification or within_hold):
        logger.info(
            "referral_void_skipped_after_hold",
            referral_id=str(referral.id),
            user_id=str(user_id),
            payable_at=payable_at.isoformat(),
            occurred_at=occurred_at.isoformat(),
        )
        return False

    referral.status = ReferralStatus.VOID
    referral.metadata_json = {
        **(referral.metadata_json or {}),
        "voided_at": occurred_at.isoformat(),
        "void_reason": reason,
    }
    voided_commissions = await void_pending_commissions(db, referral.id)
    await detach_referral_from_batch(db, referral)
    await db.flush()

    REFERRALS_VOIDED.inc()
    logger.info(
        "referral_voided",
        referral_id=str(referral.id),
        user_id=str(user_id),
        reason=reason,
        voided_commissions=voided_commissions,
    )
    return True


async def mark_referral_paid(
    db: AsyncSession,
    referral_id: uuid.UUID,
    paid_at: datetime | None = None,
    paid_by_user_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> ReferralStatus | None:
    """Settle a PAYABLE referral. Returns the resulting status, None if unknown.

    Referrals still inside their hold window, voided, already paid or held in
    a payout batch are left as they are and their current status is returned.
    """
    now = now or utcnow()
    referral = await db.get(Referral, referral_id)
    if referral is None or referral.is_template:
        return None

    status = await _refresh_status(db, referral, now)
    if status != ReferralStatus.PAYABLE or referral.payout_batch_id is not None:
        logger.info(
            "referral_payout_skipped",
            referral_id=str(referral_id),
            status=status.value,
            payout_batch_id=str(referral.payout_batch_id) if referral.payout_batch_id else None,
        )
        await db.flush()
        return status

    referral.paid_at = paid_at or now
    referral.paid_by_user_id = paid_by_user_id
    status = await _refresh_status(db, referral, now)
    await settle_pending_commissions(db, [referral.id], referral.paid_at)
    await db.flush()
    logger.info(
        "referral_paid",
        referral_id=str(referral_id),
        commission_amount_cents=referral.commission_amount_cents,
        currency=referral.currency,
    )
    return status


async def list_referrals_for_referrer(
    db: AsyncSession, referrer_id: uuid.UUID, now: datetime | None = None
) -> list[tuple[Referral, ReferralStatus]]:
    """Attributions of ``referrer_id`` with their status derived on read."""
    now = now or utcnow()
    result = await db.execute(
        select(Referral, Membership.status)
        .outerjoin(Membership, Membership.user_id == Referral.referred_user_id)
        .where(Referral.referrer_id == referrer_id, Referral.referred_user_id.isnot(None))
        .order_by(Referral.created_at.desc())
    )
    return [
        (referral, derive_referral_status(referral, membership_status, now))
        for referral, membership_status in result.all()
    ]


async def get_referral_summary(
    db: AsyncSession, referrer_id: uuid.UUID, now: datetime | None = None
) -> dict:
    rows = await list_referrals_for_referrer(db, referrer_id, now)
    earned = {ReferralStatus.QUALIFIED, ReferralStatus.PAYABLE, ReferralStatus.PAID}
    return {
        "total_signups": len(rows),
        "qualified": sum(1 for _, status in rows if status in earned),
        "payable": sum(1 for _, status in rows if status == ReferralStatus.PAYABLE),
        "paid_total_cents": sum(
            referral.commission_amount_cents or 0
            for referral, status in rows
            if status == ReferralStatus.PAID
        ),
    }
