"""Custom Prometheus metrics for referral settlement observability."""

from prometheus_client import Counter

# Scheduler job counters
SCHEDULER_JOB_RUNS = Counter(
    "portal_scheduler_job_runs_total",
    "Total scheduler job executions",
    ["job_name", "status"],
)

# Job lock outcomes: acquired / stolen / locked / already_done
JOB_LOCK_OUTCOMES = Counter(
    "portal_job_lock_outcomes_total",
    "Job lock acquisition outcomes",
    ["scope", "outcome"],
)

# Referral lifecycle transitions
REFERRALS_LINKED = Counter(
    "portal_referrals_linked_total",
    "Referral attributions created",
)
REFERRAL_LINK_REJECTED = Counter(
    "portal_referral_link_rejected_total",
    "Referral attributions rejected",
    ["reason"],
)
REFERRALS_QUALIFIED = Counter(
    "portal_referrals_qualified_total",
    "Referrals qualified by a payment",
    ["payment_type"],
)
REFERRALS_VOIDED = Counter(
    "portal_referrals_voided_total",
    "Referrals voided during the hold window",
)

# Outbound digest emails
DIGEST_EMAILS_SENT = Counter(
    "portal_digest_emails_sent_total",
    "Operational digest emails sent",
    ["digest"],
)

# Settlement ledger
COMMISSIONS_RECORDED = Counter(
    "portal_commissions_recorded_total",
    "Per-payment commission ledger entries created",
    ["payment_type"],
)
PAYOUT_BATCHES = Counter(
    "portal_payout_batches_total",
    "Affiliate payout batch transitions",
    ["status"],
)
