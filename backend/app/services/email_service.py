"""Operational email delivery through the Resend API.

Every send carries an ``Idempotency-Key`` header; Resend guarantees at most one
delivery per key, which is the only exactly-once promise this service relies on.
In dev mode (no RESEND_API_KEY), logs a warning and skips sending.
"""
from dataclasses import dataclass
from datetime import datetime
from html import escape
from urllib.parse import quote

import httpx
import structlog

from app.config import settings
from app.metrics import DIGEST_EMAILS_SENT
from app.utils.log_mask import mask_email

logger = structlog.get_logger()

RESEND_API_URL = "https://api.resend.com/emails"
DIGEST_MAX_ROWS = 30

_email_client: httpx.AsyncClient | None = None


def _get_email_client() -> httpx.AsyncClient:
    global _email_client
    if _email_client is None or _email_client.is_closed:
        _email_client = httpx.AsyncClient(
            timeout=httpx.Timeout(connect=5.0, read=10.0, write=5.0, pool=5.0),
        )
    return _email_client


@dataclass
class TrialDigestEntry:
    membership_id: str
    user_id: str
    name: str | None
    email: str
    tier: str
    trial_end: datetime
    joined_at: datetime | None


def build_trial_reminder_digest_email(
    entries: list[TrialDigestEntry],
    target_date: str,
    app_url: str,
) -> dict[str, str]:
    """Render subject/html/text for the trial-ending-in-7-days digest."""
    shown = entries[:DIGEST_MAX_ROWS]
    remaining = len(entries) - len(shown)
    admin_url = f"{app_url}/admin/users"

    rows_html = "".join(
        "<tr>"
        f"<td>{escape(entry.name or 'No name')}</td>"
        f"<td>{escape(entry.email)}</td>"
        f"<td>{escape(entry.tier)}</td>"
        f"<td>{entry.trial_end.strftime('%Y-%m-%d %H:%M')} UTC</td>"
        f"<td>{entry.joined_at.strftime('%Y-%m-%d') if entry.joined_at else '-'}</td>"
        f'<td><a href="{escape(admin_url)}?email={quote(entry.email)}">View</a></td>'
        "</tr>"
        for entry in shown
    )
    more_html = f"<p>...and {remaining} more.</p>" if remaining > 0 else ""
    html = (
        "<h2>Trial users with 7 days remaining</h2>"
        f"<p>Digest date: {escape(target_date)}</p>"
        f"<p>Found <strong>{len(entries)}</strong> trial member(s) ending in 7 days.</p>"
        "<table>"
        "<tr><th>Name</th><th>Email</th><th>Tier</th><th>Trial ends</th><th>Joined</th><th></th></tr>"
        f"{rows_html}"
        "</table>"
        f"{more_html}"
        f'<p><a href="{escape(admin_url)}">Open admin</a></p>'
    )

    text_lines = [
        f"Trial users with 7 days remaining ({target_date})",
        f"Found {len(entries)} trial member(s) ending in 7 days.",
        "",
    ]
    text_lines += [
        f"- {entry.name or 'No name'} <{entry.email}> {entry.tier}, ends {entry.trial_end.strftime('%Y-%m-%d %H:%M')} UTC"
        for entry in shown
    ]
    if remaining > 0:
        text_lines.append(f"...and {remaining} more.")
    text_lines += ["", admin_url]

    return {
        "subject": f"{len(entries)} trial(s) ending on {target_date}",
        "html": html,
        "text": "\n".join(text_lines),
    }


async def send_email(to_email: str, message: dict[str, str], idempotency_key: str) -> bool:
    """Send one email via Resend. Returns True if the API accepted it."""
    if not settings.RESEND_API_KEY:
        logger.warning(
            "resend_api_key_not_set",
            msg="RESEND_API_KEY not configured, skipping email send (dev mode)",
            email=mask_email(to_email),
        )
        return False

    payload = {
        "from": settings.EMAIL_FROM,
        "to": [to_email],
        **message,
    }

    try:
        client = _get_email_client()
        response = await client.post(
            RESEND_API_URL,
            json=payload,
            headers={
                "Authorization": f"Bearer {settings.RESEND_API_KEY}",
                "Content-Type": "application/json",
                "Idempotency-Key": idempotency_key,
            },
        )
        if response.is_success:
            logger.info("email_sent", email=mask_email(to_email), idempotency_key=idempotency_key)
            return True
        logger.error(
            "email_send_failed",
            email=mask_email(to_email),
            status_code=response.status_code,
            idempotency_key=idempotency_key,
        )
        return False
    except Exception as exc:
        logger.error("email_send_error", email=mask_email(to_email), error=str(exc))
        return False


async def send_trial_reminder_digest_email(
    to_email: str,
    entries: list[TrialDigestEntry],
    target_date: str,
    app_url: str,
    idempotency_key: str,
) -> bool:
    """Send the aggregated trial-reminder digest to the operations inbox."""
    message = build_trial_reminder_digest_email(entries, target_date, app_url)
    sent = await send_email(to_email, message, idempotency_key)
    if sent:
        DIGEST_EMAILS_SENT.labels(digest="trial_reminder_7d").inc()
    return sent
