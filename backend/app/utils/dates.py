from datetime import date, datetime, time, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite; convert aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_utc_day(value: datetime) -> datetime:
    value = ensure_utc(value)
    return datetime.combine(value.date(), time.min, tzinfo=timezone.utc)


def end_of_utc_day(value: datetime) -> datetime:
    return start_of_utc_day(value) + timedelta(days=1) - timedelta(microseconds=1)


def utc_date_key(value: datetime | date) -> str:
    """ISO date string (YYYY-MM-DD) of the UTC calendar day."""
    if isinstance(value, datetime):
        value = ensure_utc(value).date()
    return value.isoformat()
