"""External cron triggers for the settlement and reminder jobs.

These run the same lock-protected jobs as the in-process scheduler; whichever
trigger fires first wins and the others report ``skipped``.
"""
import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from app.dependencies import verify_internal_api_key
from app.schemas.referral import JobRunResponse
from app.services.scheduler import (
    DigestDeliveryError,
    run_affiliate_payable_job,
    run_trial_expiry_job,
    run_trial_reminder_7d_digest,
)

logger = structlog.get_logger()
router = APIRouter(dependencies=[Depends(verify_internal_api_key)])

MANUAL_TRIGGER = "manual"


@router.post("/trial-expiry", response_model=JobRunResponse)
async def trigger_trial_expiry():
    return await run_trial_expiry_job(trigger=MANUAL_TRIGGER)


@router.post("/trial-reminder-7d", response_model=JobRunResponse)
async def trigger_trial_reminder_digest():
    try:
        return await run_trial_reminder_7d_digest(trigger=MANUAL_TRIGGER)
    except DigestDeliveryError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=str(exc),
        )


@router.post("/affiliate-payables", response_model=JobRunResponse)
async def trigger_affiliate_payables():
    return await run_affiliate_payable_job(trigger=MANUAL_TRIGGER)
