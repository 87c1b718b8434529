from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.enums import JobLockReason, JobLockStatus
from app.services.job_lock import (
    acquire_job_lock,
    get_job_lock,
    release_job_lock,
    update_job_lock_payload,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

SCOPE = "TEST_JOB_LOCK"
KEY = "GLOBAL"


@pytest.mark.asyncio
async def test_acquire_fresh_lock(db: AsyncSession):
    """First caller inserts the row with a running payload."""
    result = await acquire_job_lock(db, SCOPE, KEY, run_id="run-1", trigger="cron", now=NOW)

    assert result.acquired is True
    assert result.stolen is False
    lock = await get_job_lock(db, SCOPE, KEY)
    assert lock.payload["run_id"] == "run-1"
    assert lock.payload["trigger"] == "cron"
    assert lock.payload["status"] == JobLockStatus.RUNNING.value
    assert lock.payload["holder"]


@pytest.mark.asyncio
async def test_second_caller_is_locked_out(db: AsyncSession):
    await acquire_job_lock(db, SCOPE, KEY, run_id="run-1", trigger="cron", now=NOW)

    result = await acquire_job_lock(
        db, SCOPE, KEY, run_id="run-2", trigger="manual", now=NOW + timedelta(minutes=5)
    )

    assert result.acquired is False
    assert result.reason == JobLockReason.LOCKED
    assert result.previous_run_id == "run-1"
    lock = await get_job_lock(db, SCOPE, KEY)
    assert lock.payload["run_id"] == "run-1"


@pytest.mark.asyncio
async def test_mutual_exclusion_across_sessions(session_factory):
    """Two runs racing on separate sessions: exactly one wins."""
    async with session_factory() as first, session_factory() as second:
        a = await acquire_job_lock(first, SCOPE, KEY, run_id="run-a", trigger="cron", now=NOW)
        b = await acquire_job_lock(second, SCOPE, KEY, run_id="run-b", trigger="manual", now=NOW)

    assert [a.acquired, b.acquired].count(True) == 1
    assert b.reason == JobLockReason.LOCKED


@pytest.mark.asyncio
async def test_terminal_status_reports_already_done(db: AsyncSession):
    await acquire_job_lock(db, SCOPE, KEY, run_id="run-1", trigger="cron", now=NOW)
    await update_job_lock_payload(
        db, SCOPE, KEY, {"run_id": "run-1", "status": JobLockStatus.SENT.value}, run_id="run-1", now=NOW
    )

    result = await acquire_job_lock(
        db,
        SCOPE,
        KEY,
        run_id="run-2",
        trigger="cron",
        terminal_statuses=(JobLockStatus.SENT, JobLockStatus.SENT_LOG_FAILED),
        now=NOW + timedelta(minutes=1),
    )

    assert result.acquired is False
    assert result.reason == JobLockReason.ALREADY_DONE


@pytest.mark.asyncio
async def test_terminal_lock_is_never_stolen(db: AsyncSession):
    """A completed run stays completed no matter how old the row is."""
    await acquire_job_lock(db, SCOPE, KEY, run_id="run-1", trigger="cron", now=NOW)
    await update_job_lock_payload(
        db, SCOPE, KEY, {"run_id": "run-1", "status": "sent_log_failed"}, run_id="run-1", now=NOW
    )

    result = await acquire_job_lock(
        db,
        SCOPE,
        KEY,
        run_id="run-2",
        trigger="cron",
        terminal_statuses=("sent", "sent_log_failed"),
        now=NOW + timedelta(days=2),
    )

    assert result.reason == JobLockReason.ALREADY_DONE
    lock = await get_job_lock(db, SCOPE, KEY)
    assert lock.payload["run_id"] == "run-1"


@pytest.mark.asyncio
async def test_stale_lock_is_stolen(db: AsyncSession):
    """A holder silent for longer than the TTL is presumed dead."""
    await acquire_job_lock(db, SCOPE, KEY, run_id="crashed-run", trigger="cron", now=NOW)

    result = await acquire_job_lock(
        db, SCOPE, KEY, run_id="run-2", trigger="cron", now=NOW + timedelta(minutes=31)
    )

    assert result.acquired is True
    assert result.stolen is True
    assert result.previous_run_id == "crashed-run"

    db.expire_all()
    lock = await get_job_lock(db, SCOPE, KEY)
    assert lock.payload["run_id"] == "run-2"
    assert lock.payload["stolen"] is True
    assert lock.payload["previous_run_id"] == "crashed-run"


@pytest.mark.asyncio
async def test_lock_within_ttl_is_not_stolen(db: AsyncSession):
    await acquire_job_lock(db, SCOPE, KEY, run_id="run-1", trigger="cron", now=NOW)

    result = await acquire_job_lock(
        db, SCOPE, KEY, run_id="run-2", trigger="cron", now=NOW + timedelta(minutes=29)
    )

    assert result.acquired is False
    assert result.reason == JobLockReason.LOCKED


@pytest.mark.asyncio
async def test_custom_ttl(db: AsyncSession):
    await acquire_job_lock(db, SCOPE, KEY, run_id="run-1", trigger="cron", now=NOW)

    result = await acquire_job_lock(
        db,
        SCOPE,
        KEY,
        run_id="run-2",
        trigger="cron",
        now=NOW + timedelta(minutes=6),
        ttl=timedelta(minutes=5),
    )

    assert result.acquired is True
    assert result.stolen is True


@pytest.mark.asyncio
async def test_release_allows_next_run(db: AsyncSession):
    await acquire_job_lock(db, SCOPE, KEY, run_id="run-1", trigger="cron", now=NOW)
    assert await release_job_lock(db, SCOPE, KEY, run_id="run-1") is True

    assert await get_job_lock(db, SCOPE, KEY) is None
    result = await acquire_job_lock(db, SCOPE, KEY, run_id="run-2", trigger="cron", now=NOW)
    assert result.acquired is True


@pytest.mark.asyncio
async def test_update_payload_on_missing_row(db: AsyncSession):
    assert await update_job_lock_payload(db, SCOPE, "missing", {"status": "sent"}, run_id="run-1") is False


@pytest.mark.asyncio
async def test_storage_error_propagates_without_row(db: AsyncSession):
    """Anything other than a uniqueness conflict aborts the run."""
    with patch.object(db, "commit", AsyncMock(side_effect=RuntimeError("database unavailable"))):
        with pytest.raises(RuntimeError):
            await acquire_job_lock(db, SCOPE, KEY, run_id="run-1", trigger="cron", now=NOW)

    assert await get_job_lock(db, SCOPE, KEY) is None


@pytest.mark.asyncio
async def test_extra_payload_is_recorded(db: AsyncSession):
    await acquire_job_lock(
        db, SCOPE, "2026-03-17", run_id="run-1", trigger="cron", now=NOW,
        extra_payload={"target_date": "2026-03-17"},
    )

    lock = await get_job_lock(db, SCOPE, "2026-03-17")
    assert lock.payload["target_date"] == "2026-03-17"


@pytest.mark.asyncio
async def test_stolen_lease_survives_release_by_previous_holder(db: AsyncSession):
    """A slow run finishing after its lease was stolen must not free the new holder's lock."""
    await acquire_job_lock(db, SCOPE, KEY, run_id="run-a", trigger="cron", now=NOW)
    stolen = await acquire_job_lock(
        db, SCOPE, KEY, run_id="run-b", trigger="cron", now=NOW + timedelta(minutes=31)
    )
    assert stolen.acquired is True

    assert await release_job_lock(db, SCOPE, KEY, run_id="run-a") is False

    third = await acquire_job_lock(
        db, SCOPE, KEY, run_id="run-c", trigger="manual", now=NOW + timedelta(minutes=32)
    )
    assert third.acquired is False
    assert third.reason == JobLockReason.LOCKED
    assert third.previous_run_id == "run-b"


@pytest.mark.asyncio
async def test_previous_holder_cannot_overwrite_payload(db: AsyncSession):
    await acquire_job_lock(db, SCOPE, KEY, run_id="run-a", trigger="cron", now=NOW)
    await acquire_job_lock(db, SCOPE, KEY, run_id="run-b", trigger="cron", now=NOW + timedelta(minutes=31))
    await update_job_lock_payload(
        db, SCOPE, KEY, {"run_id": "run-b", "status": "sent"}, run_id="run-b", now=NOW + timedelta(minutes=33)
    )

    written = await update_job_lock_payload(
        db, SCOPE, KEY, {"run_id": "run-a", "status": "failed"}, run_id="run-a", now=NOW + timedelta(minutes=34)
    )

    assert written is False
    lock = await get_job_lock(db, SCOPE, KEY)
    assert lock.payload["run_id"] == "run-b"
    assert lock.payload["status"] == "sent"


@pytest.mark.asyncio
async def test_release_by_holder_after_steal(db: AsyncSession):
    await acquire_job_lock(db, SCOPE, KEY, run_id="run-a", trigger="cron", now=NOW)
    await acquire_job_lock(db, SCOPE, KEY, run_id="run-b", trigger="cron", now=NOW + timedelta(minutes=31))

    assert await release_job_lock(db, SCOPE, KEY, run_id="run-b") is True
    assert await get_job_lock(db, SCOPE, KEY) is None
