"""Referral code registry: per-referrer reusable codes.

A referrer's code is their referral slug (custom or generated). The code is a
durable identifier of the referrer, never a single-use voucher: validation
succeeds for as long as the master template is neither cancelled nor expired,
however many users have already signed up with it.
"""
import secrets
import string
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from email.utils import format_datetime

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.enums import ReferralCodeStatus, ReferralStatus
from app.models.referral import Referral
from app.models.user import User
from app.utils.dates import ensure_utc, utcnow

logger = structlog.get_logger()

REFERRAL_COOKIE_NAME = "referral_code"
_SLUG_ALPHABET = string.ascii_lowercase + string.digits


class ReferralError(Exception):
    pass


class ReferralSystemDisabledError(ReferralError):
    pass


class UnknownReferrerError(ReferralError):
    pass


class ReferralCodeCancelledError(ReferralError):
    pass


@dataclass
class ValidatedReferral:
    id: uuid.UUID
    referrer_id: uuid.UUID
    status: str


@dataclass
class ReferralCodeValidation:
    valid: bool
    referral: ValidatedReferral | None = None
    error: str | None = None


def _random_chars(length: int) -> str:
    return "".join(secrets.choice(_SLUG_ALPHABET) for _ in range(length))


def _code_expires_at(now: datetime) -> datetime | None:
    if not settings.REFERRAL_CODE_EXPIRY_DAYS:
        return None
    return now + timedelta(days=settings.REFERRAL_CODE_EXPIRY_DAYS)


def _ensure_enabled() -> None:
    if not settings.REFERRAL_SYSTEM_ENABLED:
        raise ReferralSystemDisabledError("Referral system is disabled")


async def generate_default_referral_slug(db: AsyncSession, user_id: uuid.UUID) -> str:
    """Build ``user<6-char id prefix><4 random chars>``, adding 2 more chars on collision."""
    prefix = str(user_id)[:6].lower()
    slug = f"user{prefix}{_random_chars(4)}"

    existing = await db.execute(select(User.id).where(User.referral_slug == slug))
    if existing.scalar_one_or_none() is not None:
        return f"{slug}{_random_chars(2)}"
    return slug


async def get_or_generate_referral_slug(db: AsyncSession, user_id: uuid.UUID) -> str:
    _ensure_enabled()

    user = await db.get(User, user_id)
    if user is None:
        raise UnknownReferrerError(f"User {user_id} not found")
    if user.referral_slug:
        return user.referral_slug

    slug = await generate_default_referral_slug(db, user_id)
    user.referral_slug = slug
    await db.flush()
    logger.info("referral_slug_generated", user_id=str(user_id), slug=slug)
    return slug


async def _find_template(db: AsyncSession, referrer_id: uuid.UUID, code: str) -> Referral | None:
    result = await db.execute(
        select(Referral)
        .where(
            Referral.referrer_id == referrer_id,
            Referral.referral_code == code,
            Referral.referred_user_id.is_(None),
        )
        .order_by(Referral.created_at.asc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _create_template(
    db: AsyncSession, referrer_id: uuid.UUID, code: str, now: datetime
) -> Referral:
    """Insert the master template, or return the one a concurrent caller just created."""
    template = Referral(
        referrer_id=referrer_id,
        referral_code=code,
        referred_user_id=None,
        status=ReferralStatus.PENDING,
        code_status=ReferralCodeStatus.PENDING,
        expires_at=_code_expires_at(now),
    )
    try:
        # At most one template per (referrer, code); the partial unique index decides races
        async with db.begin_nested():
            db.add(template)
    except IntegrityError:
        existing = await _find_template(db, referrer_id, code)
        if existing is None:
            raise
        logger.info("referral_template_race_lost", referrer_id=str(referrer_id), code=code)
        return existing

    logger.info("referral_template_created", referrer_id=str(referrer_id), code=code)
    return template


async def get_or_create_referral_code(
    db: AsyncSession, referrer_id: uuid.UUID, now: datetime | None = None
) -> str:
    """Return the referrer's reusable code, creating its master template on first use.

    A cancelled template is final: no second template is created behind it.
    """
    _ensure_enabled()
    slug = await get_or_generate_referral_slug(db, referrer_id)

    template = await _find_template(db, referrer_id, slug)
    if template is None:
        template = await _create_template(db, referrer_id, slug, now or utcnow())

    if template.code_status == ReferralCodeStatus.CANCELLED:
        logger.info("referral_code_cancelled", referrer_id=str(referrer_id), code=slug)
        raise ReferralCodeCancelledError(f"Referral code {slug} has been cancelled")
    return template.referral_code


async def validate_referral_code(
    db: AsyncSession, code: str | None, now: datetime | None = None
) -> ReferralCodeValidation:
    """Resolve ``code`` to a referrer and check its template is usable.

    Slugs are tried first; anything else is treated as a legacy code and
    matched against existing referral rows. Failures never write.
    """
    if not settings.REFERRAL_SYSTEM_ENABLED:
        return ReferralCodeValidation(valid=False, error="Referral system is disabled")
    if not code or not code.strip():
        return ReferralCodeValidation(valid=False, error="Referral code is required")

    code = code.strip()
    now = now or utcnow()

    owner = await db.execute(select(User.id).where(User.referral_slug == code))
    referrer_id = owner.scalar_one_or_none()
    is_slug = referrer_id is not None

    if not is_slug:
        legacy = await db.execute(
            select(Referral.referrer_id)
            .where(Referral.referral_code == code)
            .order_by(Referral.created_at.asc())
            .limit(1)
        )
        referrer_id = legacy.scalar_one_or_none()
        if referrer_id is None:
            return ReferralCodeValidation(valid=False, error="Invalid referral code")

    row = await _find_template(db, referrer_id, code)
    if row is None:
        # Legacy data may only hold claimed rows for this code
        result = await db.execute(
            select(Referral)
            .where(Referral.referrer_id == referrer_id, Referral.referral_code == code)
            .order_by(Referral.created_at.asc())
            .limit(1)
        )
        row = result.scalar_one_or_none()

    if row is None:
        if not is_slug:
            return ReferralCodeValidation(valid=False, error="Invalid referral code")
        row = await _create_template(db, referrer_id, code, now)

    if row.code_status == ReferralCodeStatus.CANCELLED:
        return ReferralCodeValidation(valid=False, error="Referral code has been cancelled")

    expires_at = ensure_utc(row.expires_at)
    if expires_at is not None and expires_at < now:
        return ReferralCodeValidation(valid=False, error="Referral code has expired")

    return ReferralCodeValidation(
        valid=True,
        referral=ValidatedReferral(
            id=row.id,
            referrer_id=row.referrer_id,
            status=ReferralCodeStatus.PENDING.value,
        ),
    )


def build_referral_cookie(code: str, now: datetime | None = None) -> str:
    """Set-Cookie value remembering a clicked referral code until signup."""
    expires = (now or utcnow()) + timedelta(days=settings.REFERRAL_COOKIE_EXPIRY_DAYS)
    return (
        f"{REFERRAL_COOKIE_NAME}={code}; Path=/; "
        f"Expires={format_datetime(expires, usegmt=True)}; SameSite=Lax; HttpOnly"
    )


def parse_referral_cookie(cookie_header: str | None) -> str | None:
    if not cookie_header:
        return None
    for part in cookie_header.split(";"):
        name, _, value = part.strip().partition("=")
        if name == REFERRAL_COOKIE_NAME:
            return value or None
    return None
