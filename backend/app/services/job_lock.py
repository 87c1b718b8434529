"""Job lock coordinator: a lease built on the unique (scope, key) constraint.

Acquisition is a plain INSERT. A uniqueness conflict means another run owns
(or finished) the same scope/key, and the existing row's payload decides:

* payload status in ``terminal_statuses`` -> ``already-done`` (never stolen);
* row not touched for longer than the TTL -> stolen, the payload records the
  previous run id;
* otherwise -> ``locked``.

Every function commits the session it is given, so callers should acquire the
lock before staging any other work on that session.
"""
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.metrics import JOB_LOCK_OUTCOMES
from app.models.enums import JobLockReason, JobLockStatus
from app.models.job_lock import JobLock
from app.utils.dates import ensure_utc, utcnow

logger = structlog.get_logger()

# Conflicts can race with a release (row deleted between INSERT and SELECT)
MAX_ACQUIRE_ATTEMPTS = 2


@dataclass
class JobLockResult:
    acquired: bool
    reason: JobLockReason | None = None
    stolen: bool = False
    previous_run_id: str | None = None


def default_lock_ttl() -> timedelta:
    return timedelta(minutes=settings.JOB_LOCK_TTL_MINUTES)


def get_lock_holder() -> str:
    return os.getenv("HOSTNAME") or "local"


async def get_job_lock(db: AsyncSession, scope: str, key: str) -> JobLock | None:
    result = await db.execute(
        select(JobLock).where(JobLock.scope == scope, JobLock.key == key)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _insert_lock(db: AsyncSession, scope: str, key: str, payload: dict, now: datetime) -> bool:
    db.add(JobLock(scope=scope, key=key, payload=payload, created_at=now, updated_at=now))
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        return False
    except Exception:
        # Storage unavailable: abort the run, nothing was written
        await db.rollback()
        logger.exception("job_lock_acquire_failed", scope=scope, key=key)
        raise
    return True


async def acquire_job_lock(
    db: AsyncSession,
    scope: str,
    key: str,
    *,
    run_id: str,
    trigger: str,
    terminal_statuses: Iterable[str] = (),
    now: datetime | None = None,
    ttl: timedelta | None = None,
    extra_payload: dict[str, Any] | None = None,
) -> JobLockResult:
    """Try to take the (scope, key) lease for ``run_id``."""
    now = now or utcnow()
    ttl = ttl or default_lock_ttl()
    terminal = {str(s.value if isinstance(s, JobLockStatus) else s) for s in terminal_statuses}
    holder = get_lock_holder()
    payload = {
        "run_id": run_id,
        "trigger": trigger,
        "holder": holder,
        "status": JobLockStatus.RUNNING.value,
        "locked_at": now.isoformat(),
        **(extra_payload or {}),
    }

    for _ in range(MAX_ACQUIRE_ATTEMPTS):
        if await _insert_lock(db, scope, key, payload, now):
            JOB_LOCK_OUTCOMES.labels(scope=scope, outcome="acquired").inc()
            logger.info("job_lock_acquired", scope=scope, key=key, run_id=run_id, trigger=trigger, holder=holder)
            return JobLockResult(acquired=True)

        existing = await get_job_lock(db, scope, key)
        if existing is None:
            continue

        existing_payload = existing.payload or {}
        existing_status = existing_payload.get("status")
        existing_run_id = existing_payload.get("run_id", "unknown")

        if existing_status in terminal:
            JOB_LOCK_OUTCOMES.labels(scope=scope, outcome="already_done").inc()
            logger.info(
                "job_lock_already_done",
                scope=scope,
                key=key,
                run_id=run_id,
                previous_run_id=existing_run_id,
                status=existing_status,
            )
            return JobLockResult(
                acquired=False,
                reason=JobLockReason.ALREADY_DONE,
                previous_run_id=existing_run_id,
            )

        if now - ensure_utc(existing.updated_at) > ttl:
            # Compare-and-swap on updated_at so two stealers cannot both win
            result = await db.execute(
                update(JobLock)
                .where(JobLock.id == existing.id, JobLock.updated_at == existing.updated_at)
                .values(
                    payload={**payload, "stolen": True, "previous_run_id": existing_run_id},
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if result.rowcount == 1:
                JOB_LOCK_OUTCOMES.labels(scope=scope, outcome="stolen").inc()
                logger.warning(
                    "job_lock_stolen",
                    scope=scope,
                    key=key,
                    run_id=run_id,
                    previous_run_id=existing_run_id,
                    previous_holder=existing_payload.get("holder", "unknown"),
                    previous_locked_at=existing_payload.get("locked_at"),
                )
                return JobLockResult(acquired=True, stolen=True, previous_run_id=existing_run_id)

        JOB_LOCK_OUTCOMES.labels(scope=scope, outcome="locked").inc()
        logger.warning(
            "job_lock_held",
            scope=scope,
            key=key,
            run_id=run_id,
            current_run_id=existing_run_id,
            current_holder=existing_payload.get("holder", "unknown"),
            locked_at=existing_payload.get("locked_at"),
        )
        return JobLockResult(acquired=False, reason=JobLockReason.LOCKED, previous_run_id=existing_run_id)

    JOB_LOCK_OUTCOMES.labels(scope=scope, outcome="locked").inc()
    logger.warning("job_lock_contended", scope=scope, key=key, run_id=run_id)
    return JobLockResult(acquired=False, reason=JobLockReason.LOCKED)


def _held_by(scope: str, key: str, run_id: str):
    return (
        JobLock.scope == scope,
        JobLock.key == key,
        JobLock.payload["run_id"].as_string() == run_id,
    )


async def update_job_lock_payload(
    db: AsyncSession,
    scope: str,
    key: str,
    payload: dict[str, Any],
    *,
    run_id: str,
    now: datetime | None = None,
) -> bool:
    """Overwrite the lock payload (e.g. to record a terminal status).

    Only the run that currently holds the row may write it. Returns False when
    the row is gone or has been stolen by another run.
    """
    result = await db.execute(
        update(JobLock)
        .where(*_held_by(scope, key, run_id))
        .values(payload=payload, updated_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount == 0:
        logger.warning("job_lock_update_not_held", scope=scope, key=key, run_id=run_id)
        return False
    return True


async def release_job_lock(db: AsyncSession, scope: str, key: str, *, run_id: str) -> bool:
    """Delete the lock row so the next scheduled run starts fresh.

    A run whose lease was stolen leaves the new holder's row alone.
    """
    result = await db.execute(
        delete(JobLock)
        .where(*_held_by(scope, key, run_id))
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount == 0:
        logger.warning("job_lock_release_not_held", scope=scope, key=key, run_id=run_id)
        return False
    logger.info("job_lock_released", scope=scope, key=key, run_id=run_id)
    return True
