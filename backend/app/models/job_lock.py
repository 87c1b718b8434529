import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.models.types import GUID


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobLock(Base):
    """A held or completed lease for one (scope, key) of a periodic job.

    The unique constraint on (scope, key) is the only mutual-exclusion
    mechanism. Timestamps are written by the application clock so that TTL
    checks compare like with like.
    """

    __tablename__ = "job_locks"
    __table_args__ = (UniqueConstraint("scope", "key", name="uq_job_locks_scope_key"),)

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    scope: Mapped[str] = mapped_column(String(100), nullable=False)
    key: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )
