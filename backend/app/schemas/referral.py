import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field, field_validator

from app.models.enums import CommissionStatus, PayoutBatchStatus, ReferralStatus


class ReferralCodeResponse(BaseModel):
    code: str
    referrer_id: uuid.UUID


class ReferralValidationResponse(BaseModel):
    valid: bool
    error: str | None = None


class ReferralResponse(BaseModel):
    id: uuid.UUID
    referral_code: str
    referred_user_id: uuid.UUID | None
    status: ReferralStatus
    signed_up_at: datetime | None = None
    trial_started_at: datetime | None = None
    qualified_at: datetime | None = None
    payable_at: datetime | None = None
    paid_at: datetime | None = None
    commission_amount_cents: int | None = None
    currency: str
    created_at: datetime
    model_config = {"from_attributes": True}


class ReferralSummaryResponse(BaseModel):
    total_signups: int
    qualified: int
    payable: int
    paid_total_cents: int


class SignupSignal(BaseModel):
    user_id: uuid.UUID
    referral_code: str | None = Field(default=None, max_length=64)


class TrialStartedSignal(BaseModel):
    user_id: uuid.UUID
    trial_started_at: datetime
    trial_ends_at: datetime | None = None


class PaymentSucceededSignal(BaseModel):
    user_id: uuid.UUID
    # Billing provider payment id; keys the per-payment commission ledger
    payment_id: str | None = Field(default=None, min_length=1, max_length=255)
    paid_at: datetime
    plan_price_cents: int = Field(ge=0)
    currency: str = Field(default="usd", min_length=3, max_length=3)
    is_initial: bool = True

    @field_validator("currency")
    @classmethod
    def lowercase_currency(cls, v: str) -> str:
        return v.lower()


class SubscriptionCancelledSignal(BaseModel):
    user_id: uuid.UUID
    occurred_at: datetime
    reason: str = Field(default="subscription_cancelled", max_length=100)


class SignalResponse(BaseModel):
    success: bool
    referral_id: uuid.UUID | None = None
    status: str | None = None
    error: str | None = None
    commission_id: uuid.UUID | None = None


class JobRunResponse(BaseModel):
    run_id: str
    processed: int
    skipped: str | None = None
    model_config = {"extra": "allow"}


class CommissionResponse(BaseModel):
    id: uuid.UUID
    referral_id: uuid.UUID
    payment_id: str
    payment_amount_cents: int
    amount: Decimal
    rate: Decimal
    currency: str
    is_initial: bool
    status: CommissionStatus
    paid_at: datetime | None = None
    created_at: datetime
    model_config = {"from_attributes": True}


class CommissionListResponse(BaseModel):
    commissions: list[CommissionResponse]
    total: int
    pending_total: Decimal
    paid_total: Decimal


class PayoutBatchCreate(BaseModel):
    referrer_id: uuid.UUID
    referral_ids: list[uuid.UUID] | None = Field(default=None, max_length=500)
    notes: str | None = Field(default=None, max_length=2000)


class PayoutBatchPaid(BaseModel):
    paid_by_user_id: uuid.UUID | None = None


class PayoutBatchResponse(BaseModel):
    id: uuid.UUID
    referrer_id: uuid.UUID
    status: PayoutBatchStatus
    total_amount_cents: int
    currency: str
    due_at: datetime | None = None
    paid_at: datetime | None = None
    paid_by_user_id: uuid.UUID | None = None
    notes: str | None = None
    referral_ids: list[uuid.UUID] = []
    created_at: datetime
    model_config = {"from_attributes": True}
