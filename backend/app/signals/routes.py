"""Inbound billing and signup signals.

Producers deliver at least once, so every handler answers 200 with a
``success`` flag for handled outcomes (including idempotent no-ops) and only
uses error statuses for malformed or unknown input.
"""
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import verify_internal_api_key
from app.models.enums import ReferralStatus
from app.models.user import User
from app.schemas.referral import (
    PaymentSucceededSignal,
    SignalResponse,
    SignupSignal,
    SubscriptionCancelledSignal,
    TrialStartedSignal,
)
from app.services.commission_ledger import record_payment_commission
from app.services.referral_codes import parse_referral_cookie
from app.services.referral_lifecycle import (
    link_referral_to_user,
    mark_referral_qualified_from_payment,
    mark_referral_trial,
    void_referral_if_in_hold,
)
from app.utils.dates import ensure_utc

logger = structlog.get_logger()
router = APIRouter(dependencies=[Depends(verify_internal_api_key)])


@router.post("/signup", response_model=SignalResponse)
async def signup_signal(
    body: SignupSignal,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Attribute a new user. The code comes from the body or the forwarded referral cookie."""
    code = body.referral_code or parse_referral_cookie(request.headers.get("cookie"))
    if not code:
        return SignalResponse(success=False, error="Referral code is required")

    if await db.get(User, body.user_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        )

    result = await link_referral_to_user(db, code, body.user_id)
    return SignalResponse(success=result.success, referral_id=result.referral_id, error=result.error)


@router.post("/trial-started", response_model=SignalResponse)
async def trial_started_signal(
    body: TrialStartedSignal,
    db: AsyncSession = Depends(get_db),
):
    referral = await mark_referral_trial(
        db,
        body.user_id,
        ensure_utc(body.trial_started_at),
        ensure_utc(body.trial_ends_at),
    )
    if referral is None:
        return SignalResponse(success=False)
    return SignalResponse(success=True, referral_id=referral.id, status=ReferralStatus(referral.status).value)


@router.post("/payment-succeeded", response_model=SignalResponse)
async def payment_succeeded_signal(
    body: PaymentSucceededSignal,
    db: AsyncSession = Depends(get_db),
):
    """Qualify the referral on its first payment and record the per-payment commission."""
    referral = await mark_referral_qualified_from_payment(
        db,
        body.user_id,
        paid_at=ensure_utc(body.paid_at),
        plan_price_cents=body.plan_price_cents,
        currency=body.currency,
        is_initial=body.is_initial,
    )

    commission_id = None
    if body.payment_id:
        commission = await record_payment_commission(
            db,
            body.user_id,
            payment_id=body.payment_id,
            payment_amount_cents=body.plan_price_cents,
            currency=body.currency,
            is_initial=body.is_initial,
        )
        commission_id = commission.commission_id

    if referral is None:
        return SignalResponse(success=False, commission_id=commission_id)
    return SignalResponse(
        success=True,
        referral_id=referral.id,
        status=ReferralStatus(referral.status).value,
        commission_id=commission_id,
    )


@router.post("/subscription-cancelled", response_model=SignalResponse)
async def subscription_cancelled_signal(
    body: SubscriptionCancelledSignal,
    db: AsyncSession = Depends(get_db),
):
    voided = await void_referral_if_in_hold(db, body.user_id, ensure_utc(body.occurred_at), body.reason)
    return SignalResponse(success=voided, status=ReferralStatus.VOID.value if voided else None)
