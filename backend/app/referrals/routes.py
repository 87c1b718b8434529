import uuid

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import verify_internal_api_key
from app.models.enums import CommissionStatus, ReferralStatus
from app.schemas.referral import (
    CommissionListResponse,
    CommissionResponse,
    ReferralCodeResponse,
    ReferralResponse,
    ReferralSummaryResponse,
    ReferralValidationResponse,
    SignalResponse,
)
from app.services.commission_ledger import get_commission_totals, list_commissions_for_referrer
from app.services.referral_codes import (
    ReferralCodeCancelledError,
    ReferralSystemDisabledError,
    UnknownReferrerError,
    build_referral_cookie,
    get_or_create_referral_code,
    validate_referral_code,
)
from app.services.referral_lifecycle import (
    get_referral_summary,
    list_referrals_for_referrer,
    mark_referral_paid,
)
from app.utils.rate_limit import AUTH_RATE_LIMIT, limiter

logger = structlog.get_logger()
router = APIRouter()


@router.get("/validate/{code}", response_model=ReferralValidationResponse)
@limiter.limit(AUTH_RATE_LIMIT)
async def validate_code(
    request: Request,
    response: Response,
    code: str,
    db: AsyncSession = Depends(get_db),
):
    """Public check used by the signup page. A valid code is remembered in a cookie."""
    validation = await validate_referral_code(db, code)
    if validation.valid:
        response.headers.append("set-cookie", build_referral_cookie(code.strip()))
    return ReferralValidationResponse(valid=validation.valid, error=validation.error)


@router.post(
    "/code/{user_id}",
    response_model=ReferralCodeResponse,
    dependencies=[Depends(verify_internal_api_key)],
)
async def get_or_create_code(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    """Return the user's reusable referral code, creating it on first request."""
    try:
        code = await get_or_create_referral_code(db, user_id)
    except ReferralSystemDisabledError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Referral system is disabled",
        )
    except UnknownReferrerError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        )
    except ReferralCodeCancelledError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Referral code has been cancelled",
        )
    return ReferralCodeResponse(code=code, referrer_id=user_id)


@router.get(
    "/summary/{user_id}",
    response_model=ReferralSummaryResponse,
    dependencies=[Depends(verify_internal_api_key)],
)
async def referral_summary(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    return ReferralSummaryResponse(**await get_referral_summary(db, user_id))


@router.get(
    "/by-referrer/{user_id}",
    response_model=list[ReferralResponse],
    dependencies=[Depends(verify_internal_api_key)],
)
async def referrals_by_referrer(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    """Attributions of a referrer, newest first, with status derived at read time."""
    rows = await list_referrals_for_referrer(db, user_id)
    return [
        ReferralResponse.model_validate(referral).model_copy(update={"status": derived})
        for referral, derived in rows
    ]


@router.post(
    "/{referral_id}/paid",
    response_model=SignalResponse,
    dependencies=[Depends(verify_internal_api_key)],
)
async def mark_paid(
    referral_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    """Record the payout of a PAYABLE commission."""
    result = await mark_referral_paid(db, referral_id)
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Referral not found",
        )
    return SignalResponse(success=result == ReferralStatus.PAID, referral_id=referral_id, status=result.value)


@router.get(
    "/commissions/{user_id}",
    response_model=CommissionListResponse,
    dependencies=[Depends(verify_internal_api_key)],
)
async def referrer_commissions(
    user_id: uuid.UUID,
    commission_status: CommissionStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """Per-payment commission ledger of a referrer, newest first, with pending and paid totals."""
    commissions, total = await list_commissions_for_referrer(
        db, user_id, status=commission_status, limit=limit, offset=offset
    )
    totals = await get_commission_totals(db, user_id)
    return CommissionListResponse(
        commissions=[CommissionResponse.model_validate(c) for c in commissions],
        total=total,
        pending_total=totals["pending"],
        paid_total=totals["paid"],
    )
