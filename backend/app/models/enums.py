import enum

# These enums are stored as VARCHAR columns. Native PG ENUM types would add
# DB-level validation but make adding values an ALTER TYPE migration.


class MembershipStatus(str, enum.Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    INACTIVE = "inactive"
    CANCELLED = "cancelled"


class ReferralStatus(str, enum.Enum):
    PENDING = "PENDING"
    SIGNED_UP = "SIGNED_UP"
    TRIAL = "TRIAL"
    QUALIFIED = "QUALIFIED"
    PAYABLE = "PAYABLE"
    PAID = "PAID"
    VOID = "VOID"


class ReferralCodeStatus(str, enum.Enum):
    """State of a master template row (the reusable code itself)."""

    PENDING = "pending"
    CANCELLED = "cancelled"


class CommissionType(str, enum.Enum):
    FIXED = "FIXED"
    PERCENT = "PERCENT"


class JobLockStatus(str, enum.Enum):
    RUNNING = "running"
    SENT = "sent"
    SENT_LOG_FAILED = "sent_log_failed"
    EMPTY = "empty"
    FAILED = "failed"


class JobLockReason(str, enum.Enum):
    LOCKED = "locked"
    ALREADY_DONE = "already-done"


class CommissionStatus(str, enum.Enum):
    """State of one per-payment commission ledger entry."""

    PENDING = "pending"
    PAID = "paid"
    VOID = "void"


class PayoutBatchStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    READY = "READY"
    PAID = "PAID"
    CANCELLED = "CANCELLED"
