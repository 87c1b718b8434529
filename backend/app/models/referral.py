"""Referral rows: reusable master templates and per-user attributions.

A row with ``referred_user_id IS NULL`` is the master template for a
(referrer, code) pair. Every successful signup inserts a new attribution row
carrying the same code, so one code can refer any number of users without
touching the template.
"""
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, Numeric, String, func, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.enums import CommissionType, ReferralCodeStatus, ReferralStatus
from app.models.types import GUID


class Referral(Base):
    __tablename__ = "referrals"
    __table_args__ = (
        Index("ix_referrals_referrer_code", "referrer_id", "referral_code"),
        Index("ix_referrals_status_payable_at", "status", "payable_at"),
        # At most one master template per (referrer, code)
        Index(
            "uq_referrals_template_referrer_code",
            "referrer_id",
            "referral_code",
            unique=True,
            postgresql_where=text("referred_user_id IS NULL"),
            sqlite_where=text("referred_user_id IS NULL"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    referrer_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # Unique: a user can be referred at most once
    referred_user_id: Mapped[uuid.UUID | None] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="SET NULL"), unique=True, nullable=True
    )
    referral_code: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    # Cache of derive_referral_status(); VOID is the only authoritative value
    status: Mapped[ReferralStatus] = mapped_column(
        String(20), nullable=False, default=ReferralStatus.PENDING
    )
    code_status: Mapped[ReferralCodeStatus] = mapped_column(
        String(20), nullable=False, default=ReferralCodeStatus.PENDING
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    signed_up_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    trial_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    trial_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    qualified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    first_paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payable_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_by_user_id: Mapped[uuid.UUID | None] = mapped_column(
        GUID(), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    payout_batch_id: Mapped[uuid.UUID | None] = mapped_column(
        GUID(), ForeignKey("affiliate_payout_batches.id", ondelete="SET NULL"), nullable=True, index=True
    )

    commission_type: Mapped[CommissionType | None] = mapped_column(String(10), nullable=True)
    commission_value: Mapped[Decimal | None] = mapped_column(Numeric(12, 6), nullable=True)
    commission_amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd", server_default="usd")
    hold_days: Mapped[int | None] = mapped_column(Integer, nullable=True)

    metadata_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    referrer = relationship("User", foreign_keys=[referrer_id], lazy="raise")
    referred_user = relationship("User", foreign_keys=[referred_user_id], lazy="raise")

    @property
    def is_template(self) -> bool:
        return self.referred_user_id is None
