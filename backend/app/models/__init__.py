from app.models.commission import ReferralCommission
from app.models.job_lock import JobLock
from app.models.membership import Membership
from app.models.payout_batch import AffiliatePayoutBatch
from app.models.referral import Referral
from app.models.trial_reminder_log import TrialReminderLog
from app.models.user import User

__all__ = [
    "AffiliatePayoutBatch",
    "JobLock",
    "Membership",
    "Referral",
    "ReferralCommission",
    "TrialReminderLog",
    "User",
]
