import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.models.enums import CommissionStatus
from app.models.types import GUID


class ReferralCommission(Base):
    """Per-payment commission earned by a referrer at the tiered platform rates."""

    __tablename__ = "referral_commissions"
    __table_args__ = (
        # Redelivered payment events must not earn twice
        UniqueConstraint("payment_id", "referral_id", name="uq_referral_commissions_payment_referral"),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    referral_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("referrals.id", ondelete="CASCADE"), nullable=False, index=True
    )
    referrer_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    payment_id: Mapped[str] = mapped_column(String(255), nullable=False)
    payment_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd", server_default="usd")
    is_initial: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[CommissionStatus] = mapped_column(
        String(20), nullable=False, default=CommissionStatus.PENDING
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
