import uuid

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import verify_internal_api_key
from app.models.payout_batch import AffiliatePayoutBatch
from app.schemas.referral import PayoutBatchCreate, PayoutBatchPaid, PayoutBatchResponse
from app.services.payouts import (
    PayoutBatchError,
    PayoutBatchNotFoundError,
    PayoutBatchStateError,
    cancel_payout_batch,
    create_payout_batch,
    export_payout_batch_csv,
    get_batch_referrals,
    get_payout_batch,
    mark_payout_batch_paid,
)

logger = structlog.get_logger()
router = APIRouter(dependencies=[Depends(verify_internal_api_key)])


def _to_http_error(exc: PayoutBatchError) -> HTTPException:
    if isinstance(exc, PayoutBatchNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payout batch not found")
    if isinstance(exc, PayoutBatchStateError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


async def _batch_response(db: AsyncSession, batch: AffiliatePayoutBatch) -> PayoutBatchResponse:
    referrals = await get_batch_referrals(db, batch.id)
    # Server-side timestamps are not loaded after a flush
    await db.refresh(batch)
    return PayoutBatchResponse.model_validate(batch).model_copy(
        update={"referral_ids": [referral.id for referral in referrals]}
    )


@router.post("", response_model=PayoutBatchResponse, status_code=status.HTTP_201_CREATED)
async def create_batch(
    body: PayoutBatchCreate,
    db: AsyncSession = Depends(get_db),
):
    """Group a referrer's payable referrals into a READY payout batch."""
    try:
        batch = await create_payout_batch(db, body.referrer_id, body.referral_ids, notes=body.notes)
    except PayoutBatchError as exc:
        logger.info("payout_batch_create_rejected", referrer_id=str(body.referrer_id), reason=str(exc))
        raise _to_http_error(exc)
    return await _batch_response(db, batch)


@router.get("/{batch_id}", response_model=PayoutBatchResponse)
async def get_batch(
    batch_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    try:
        batch = await get_payout_batch(db, batch_id)
    except PayoutBatchError as exc:
        raise _to_http_error(exc)
    return await _batch_response(db, batch)


@router.post("/{batch_id}/paid", response_model=PayoutBatchResponse)
async def mark_batch_paid(
    batch_id: uuid.UUID,
    body: PayoutBatchPaid | None = None,
    db: AsyncSession = Depends(get_db),
):
    """Record the transfer of a batch; every referral in it becomes PAID."""
    try:
        batch = await mark_payout_batch_paid(db, batch_id, body.paid_by_user_id if body else None)
    except PayoutBatchError as exc:
        raise _to_http_error(exc)
    return await _batch_response(db, batch)


@router.post("/{batch_id}/cancel", response_model=PayoutBatchResponse)
async def cancel_batch(
    batch_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    try:
        batch = await cancel_payout_batch(db, batch_id)
    except PayoutBatchError as exc:
        raise _to_http_error(exc)
    return await _batch_response(db, batch)


@router.get("/{batch_id}/export.csv")
async def export_batch(
    batch_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    try:
        content = await export_payout_batch_csv(db, batch_id)
    except PayoutBatchError as exc:
        raise _to_http_error(exc)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="affiliate-payout-{batch_id}.csv"'},
    )
