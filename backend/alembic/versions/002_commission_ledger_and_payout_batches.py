"""Add per-payment commission ledger, payout batches and the one-template index

Revision ID: 002
Revises: 001
Create Date: 2026-10-20 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "affiliate_payout_batches",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "referrer_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(20), nullable=False, server_default="DRAFT"),
        sa.Column("total_amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="usd"),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "paid_by_user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('DRAFT', 'READY', 'PAID', 'CANCELLED')",
            name="ck_affiliate_payout_batches_status",
        ),
        sa.CheckConstraint("total_amount_cents >= 0", name="ck_affiliate_payout_batches_total_non_negative"),
    )
    op.create_index("ix_affiliate_payout_batches_referrer_id", "affiliate_payout_batches", ["referrer_id"])
    op.create_index("ix_affiliate_payout_batches_status", "affiliate_payout_batches", ["status"])
    op.create_index("ix_affiliate_payout_batches_due_at", "affiliate_payout_batches", ["due_at"])

    op.add_column(
        "referrals",
        sa.Column(
            "payout_batch_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("affiliate_payout_batches.id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    op.create_index("ix_referrals_payout_batch_id", "referrals", ["payout_batch_id"])

    # At most one master template per (referrer, code)
    op.create_index(
        "uq_referrals_template_referrer_code",
        "referrals",
        ["referrer_id", "referral_code"],
        unique=True,
        postgresql_where=sa.text("referred_user_id IS NULL"),
    )

    op.create_table(
        "referral_commissions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "referral_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("referrals.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "referrer_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("payment_id", sa.String(255), nullable=False),
        sa.Column("payment_amount_cents", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("rate", sa.Numeric(6, 4), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="usd"),
        sa.Column("is_initial", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("payment_id", "referral_id", name="uq_referral_commissions_payment_referral"),
        sa.CheckConstraint("amount >= 0", name="ck_referral_commissions_amount_non_negative"),
    )
    op.create_index("ix_referral_commissions_referral_id", "referral_commissions", ["referral_id"])
    op.create_index("ix_referral_commissions_referrer_id", "referral_commissions", ["referrer_id"])


def downgrade() -> None:
    op.drop_table("referral_commissions")
    op.drop_index("uq_referrals_template_referrer_code", table_name="referrals")
    op.drop_index("ix_referrals_payout_batch_id", table_name="referrals")
    op.drop_column("referrals", "payout_batch_id")
    op.drop_table("affiliate_payout_batches")
