# Periodic settlement and reminder jobs.
#
# Jobs may be triggered concurrently from several instances (APScheduler in
# each API process plus the external cron endpoints). Every job takes its
# lease through app.services.job_lock before touching any data, so overlapping
# triggers never double-process or double-send.

import uuid
from datetime import datetime, timedelta

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy import select, update

from app.config import settings
from app.database import async_session
from app.metrics import SCHEDULER_JOB_RUNS
from app.models.enums import JobLockStatus, MembershipStatus, ReferralStatus
from app.models.membership import Membership
from app.models.referral import Referral
from app.models.trial_reminder_log import TrialReminderLog
from app.models.user import User
from app.services.email_service import TrialDigestEntry, send_trial_reminder_digest_email
from app.services.job_lock import (
    acquire_job_lock,
    get_lock_holder,
    release_job_lock,
    update_job_lock_payload,
)
from app.utils.dates import end_of_utc_day, ensure_utc, start_of_utc_day, utc_date_key, utcnow

logger = structlog.get_logger()

scheduler = AsyncIOScheduler()

GLOBAL_LOCK_KEY = "GLOBAL"
TRIAL_EXPIRY_LOCK_SCOPE = "TRIAL_EXPIRY_JOB_LOCK"
AFFILIATE_PAYABLE_LOCK_SCOPE = "AFFILIATE_PAYABLE_JOB_LOCK"
TRIAL_REMINDER_LOCK_SCOPE = "TRIAL_REMINDER_7D_DIGEST"
TRIAL_REMINDER_TYPE = "TRIAL_7_DAYS_LEFT"
TRIAL_REMINDER_LEAD_DAYS = 7
# A digest in either state must never be sent again for the same target date
TRIAL_REMINDER_TERMINAL_STATUSES = (JobLockStatus.SENT, JobLockStatus.SENT_LOG_FAILED)


class DigestDeliveryError(Exception):
    pass


def _new_run_id() -> str:
    return str(uuid.uuid4())


def _skipped(job_name: str, run_id: str, reason) -> dict:
    SCHEDULER_JOB_RUNS.labels(job_name=job_name, status="skipped").inc()
    return {"run_id": run_id, "processed": 0, "skipped": reason.value}


async def run_trial_expiry_job(trigger: str = "cron", now: datetime | None = None) -> dict:
    """Move trial/active memberships whose period has ended to inactive.

    The lock row is deleted when the sweep finishes so the next run, whenever
    it is triggered, starts fresh.
    """
    now = now or utcnow()
    run_id = _new_run_id()
    logger.info("trial_expiry_job_starting", run_id=run_id, trigger=trigger)

    async with async_session() as db:
        lock = await acquire_job_lock(
            db, TRIAL_EXPIRY_LOCK_SCOPE, GLOBAL_LOCK_KEY, run_id=run_id, trigger=trigger, now=now
        )
        if not lock.acquired:
            return _skipped("trial_expiry", run_id, lock.reason)

        try:
            result = await db.execute(
                select(
                    Membership.id,
                    Membership.user_id,
                    Membership.status,
                    Membership.tier,
                    Membership.current_period_end,
                ).where(
                    Membership.status.in_([MembershipStatus.TRIAL.value, MembershipStatus.ACTIVE.value]),
                    Membership.current_period_end < now,
                )
            )
            expired = result.all()

            if not expired:
                logger.info("trial_expiry_job_nothing_expired", run_id=run_id)
                SCHEDULER_JOB_RUNS.labels(job_name="trial_expiry", status="success").inc()
                return {"run_id": run_id, "processed": 0, "updated": 0}

            update_result = await db.execute(
                update(Membership)
                .where(Membership.id.in_([row.id for row in expired]))
                .values(status=MembershipStatus.INACTIVE.value, cancel_at_period_end=False)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

            SCHEDULER_JOB_RUNS.labels(job_name="trial_expiry", status="success").inc()
            logger.info(
                "trial_expiry_job_updated",
                run_id=run_id,
                processed=len(expired),
                updated=update_result.rowcount,
                sample=[
                    {
                        "id": str(row.id),
                        "user_id": str(row.user_id),
                        "status": row.status,
                        "tier": row.tier,
                        "current_period_end": ensure_utc(row.current_period_end).isoformat(),
                    }
                    for row in expired[:5]
                ],
            )
            return {"run_id": run_id, "processed": len(expired), "updated": update_result.rowcount}
        except Exception:
            await db.rollback()
            SCHEDULER_JOB_RUNS.labels(job_name="trial_expiry", status="error").inc()
            logger.exception("trial_expiry_job_failed", run_id=run_id)
            raise
        finally:
            await release_job_lock(db, TRIAL_EXPIRY_LOCK_SCOPE, GLOBAL_LOCK_KEY, run_id=run_id)


async def run_affiliate_payable_job(trigger: str = "cron", now: datetime | None = None) -> dict:
    """Refresh the cached status of qualified referrals whose hold window has elapsed."""
    now = now or utcnow()
    run_id = _new_run_id()
    logger.info("affiliate_payable_job_starting", run_id=run_id, trigger=trigger)

    async with async_session() as db:
        lock = await acquire_job_lock(
            db, AFFILIATE_PAYABLE_LOCK_SCOPE, GLOBAL_LOCK_KEY, run_id=run_id, trigger=trigger, now=now
        )
        if not lock.acquired:
            return _skipped("affiliate_payable", run_id, lock.reason)

        try:
            result = await db.execute(
                select(Referral.id).where(
                    Referral.status == ReferralStatus.QUALIFIED.value,
                    Referral.payable_at <= now,
                )
            )
            eligible = list(result.scalars().all())
            if not eligible:
                logger.info("affiliate_payable_job_nothing_eligible", run_id=run_id)
                SCHEDULER_JOB_RUNS.labels(job_name="affiliate_payable", status="success").inc()
                return {"run_id": run_id, "processed": 0, "updated": 0}

            update_result = await db.execute(
                update(Referral)
                .where(
                    Referral.id.in_(eligible),
                    Referral.status == ReferralStatus.QUALIFIED.value,
                )
                .values(status=ReferralStatus.PAYABLE.value)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

            SCHEDULER_JOB_RUNS.labels(job_name="affiliate_payable", status="success").inc()
            logger.info(
                "affiliate_payable_job_updated",
                run_id=run_id,
                processed=len(eligible),
                updated=update_result.rowcount,
            )
            return {"run_id": run_id, "processed": len(eligible), "updated": update_result.rowcount}
        except Exception:
            await db.rollback()
            SCHEDULER_JOB_RUNS.labels(job_name="affiliate_payable", status="error").inc()
            logger.exception("affiliate_payable_job_failed", run_id=run_id)
            raise
        finally:
            await release_job_lock(db, AFFILIATE_PAYABLE_LOCK_SCOPE, GLOBAL_LOCK_KEY, run_id=run_id)


def compute_trial_reminder_window(now: datetime) -> tuple[str, datetime, datetime]:
    """(target date key, start, end) of the UTC day TRIAL_REMINDER_LEAD_DAYS ahead."""
    start = start_of_utc_day(now) + timedelta(days=TRIAL_REMINDER_LEAD_DAYS)
    return utc_date_key(start), start, end_of_utc_day(start)


async def run_trial_reminder_7d_digest(trigger: str = "cron", now: datetime | None = None) -> dict:
    """Email operations one digest of trials ending exactly 7 UTC days from today.

    Locked per target date: once a date's digest is ``sent`` the lock row stays
    in place and later runs for that date short-circuit as ``already-done``.
    The reminder log is a second guard in case the lock row is ever lost.
    """
    now = now or utcnow()
    target_date, window_start, window_end = compute_trial_reminder_window(now)
    run_id = _new_run_id()
    logger.info(
        "trial_reminder_digest_starting",
        run_id=run_id,
        trigger=trigger,
        target_date=target_date,
        window_start=window_start.isoformat(),
        window_end=window_end.isoformat(),
    )

    async with async_session() as db:
        lock = await acquire_job_lock(
            db,
            TRIAL_REMINDER_LOCK_SCOPE,
            target_date,
            run_id=run_id,
            trigger=trigger,
            terminal_statuses=TRIAL_REMINDER_TERMINAL_STATUSES,
            now=now,
            extra_payload={"target_date": target_date},
        )
        if not lock.acquired:
            return _skipped("trial_reminder_7d", run_id, lock.reason)

        base_payload = {
            "run_id": run_id,
            "trigger": trigger,
            "holder": get_lock_holder(),
            "target_date": target_date,
            "status": JobLockStatus.RUNNING.value,
            "locked_at": now.isoformat(),
            "started_at": utcnow().isoformat(),
        }
        if lock.stolen:
            base_payload.update(stolen=True, previous_run_id=lock.previous_run_id)

        async def _finish(status: JobLockStatus, **fields) -> None:
            await update_job_lock_payload(
                db,
                TRIAL_REMINDER_LOCK_SCOPE,
                target_date,
                {**base_payload, **fields, "status": status.value, "ended_at": utcnow().isoformat()},
                run_id=run_id,
            )

        try:
            result = await db.execute(
                select(Membership, User.email, User.name, User.created_at)
                .join(User, User.id == Membership.user_id)
                .where(
                    Membership.status == MembershipStatus.TRIAL.value,
                    Membership.current_period_end >= window_start,
                    Membership.current_period_end <= window_end,
                )
            )
            memberships = result.all()

            if not memberships:
                await _finish(JobLockStatus.EMPTY, found=0)
                SCHEDULER_JOB_RUNS.labels(job_name="trial_reminder_7d", status="success").inc()
                logger.info("trial_reminder_digest_no_trials", run_id=run_id, target_date=target_date)
                return {"run_id": run_id, "processed": 0, "found": 0}

            logs = await db.execute(
                select(TrialReminderLog.membership_id, TrialReminderLog.period_end).where(
                    TrialReminderLog.reminder_type == TRIAL_REMINDER_TYPE,
                    TrialReminderLog.membership_id.in_([row.Membership.id for row in memberships]),
                    TrialReminderLog.period_end >= window_start,
                    TrialReminderLog.period_end <= window_end,
                )
            )
            logged_keys = {(membership_id, ensure_utc(period_end)) for membership_id, period_end in logs.all()}

            eligible = [
                row for row in memberships
                if row.Membership.current_period_end
                and row.email
                and (row.Membership.id, ensure_utc(row.Membership.current_period_end)) not in logged_keys
            ]
            if not eligible:
                await _finish(JobLockStatus.EMPTY, found=len(memberships))
                SCHEDULER_JOB_RUNS.labels(job_name="trial_reminder_7d", status="success").inc()
                logger.info(
                    "trial_reminder_digest_already_logged",
                    run_id=run_id,
                    found=len(memberships),
                )
                return {
                    "run_id": run_id,
                    "processed": 0,
                    "found": len(memberships),
                    "skipped_already_logged": len(memberships),
                }

            entries = [
                TrialDigestEntry(
                    membership_id=str(row.Membership.id),
                    user_id=str(row.Membership.user_id),
                    name=row.name,
                    email=row.email,
                    tier=row.Membership.tier,
                    trial_end=ensure_utc(row.Membership.current_period_end),
                    joined_at=ensure_utc(row.created_at or row.Membership.created_at),
                )
                for row in eligible
            ]
            sent = await send_trial_reminder_digest_email(
                settings.OPS_ALERT_EMAIL,
                entries,
                target_date,
                settings.app_url,
                idempotency_key=f"trial-reminder-7d:{target_date}",
            )
            if not sent:
                raise DigestDeliveryError(f"Trial reminder digest for {target_date} was not delivered")

            # Best effort from here on: the email is out and must not be re-sent
            logged = 0
            log_error = None
            try:
                for row in eligible:
                    db.add(
                        TrialReminderLog(
                            membership_id=row.Membership.id,
                            reminder_type=TRIAL_REMINDER_TYPE,
                            period_end=row.Membership.current_period_end,
                            digest_id=run_id,
                        )
                    )
                await db.commit()
                logged = len(eligible)
            except Exception as exc:
                await db.rollback()
                log_error = str(exc)
                logger.exception("trial_reminder_digest_log_failed", run_id=run_id, target_date=target_date)

            status = JobLockStatus.SENT_LOG_FAILED if log_error else JobLockStatus.SENT
            await _finish(
                status,
                found=len(memberships),
                emailed=len(eligible),
                logged=logged,
                log_error=log_error,
            )
            SCHEDULER_JOB_RUNS.labels(job_name="trial_reminder_7d", status="success").inc()
            logger.info(
                "trial_reminder_digest_sent",
                run_id=run_id,
                target_date=target_date,
                found=len(memberships),
                emailed=len(eligible),
                logged=logged,
            )
            return {
                "run_id": run_id,
                "processed": len(eligible),
                "found": len(memberships),
                "emailed": len(eligible),
                "logged": logged,
                "log_error": log_error,
            }
        except Exception as exc:
            await db.rollback()
            SCHEDULER_JOB_RUNS.labels(job_name="trial_reminder_7d", status="error").inc()
            logger.exception("trial_reminder_digest_failed", run_id=run_id, target_date=target_date)
            await _finish(JobLockStatus.FAILED, error=str(exc))
            raise


def start_scheduler() -> None:
    """Start the APScheduler with the recurring settlement and reminder jobs."""
    scheduler.add_job(
        run_trial_expiry_job,
        "interval",
        minutes=15,
        id="trial_expiry",
        replace_existing=True,
        misfire_grace_time=300,
    )
    scheduler.add_job(
        run_affiliate_payable_job,
        "interval",
        hours=1,
        id="affiliate_payables",
        replace_existing=True,
        misfire_grace_time=600,
    )
    # 8h UTC, after the overnight expiry sweeps
    scheduler.add_job(
        run_trial_reminder_7d_digest,
        "cron",
        hour=8,
        minute=0,
        id="trial_reminder_7d",
        replace_existing=True,
        misfire_grace_time=3600,
    )

    def _job_error_listener(event):
        if event.exception:
            logger.error(
                "scheduler_job_failed",
                job_id=event.job_id,
                error=str(event.exception),
            )

    from apscheduler.events import EVENT_JOB_ERROR
    scheduler.add_listener(_job_error_listener, EVENT_JOB_ERROR)

    scheduler.start()
    logger.info("scheduler_started")
