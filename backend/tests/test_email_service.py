"""Tests for the Resend digest sender: rendering, idempotency header, failure handling."""
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from app.config import settings
from app.services.email_service import (
    DIGEST_MAX_ROWS,
    RESEND_API_URL,
    TrialDigestEntry,
    _get_email_client,
    build_trial_reminder_digest_email,
    send_email,
    send_trial_reminder_digest_email,
)


def _entry(i: int = 0, name: str | None = "Jane Doe", email: str | None = None) -> TrialDigestEntry:
    return TrialDigestEntry(
        membership_id=f"m-{i}",
        user_id=f"u-{i}",
        name=name,
        email=email or f"member{i}@test.com",
        tier="T1",
        trial_end=datetime(2026, 3, 17, 10, 0, tzinfo=timezone.utc),
        joined_at=datetime(2026, 3, 3, tzinfo=timezone.utc),
    )


def _mock_client(status_code: int = 200) -> MagicMock:
    client = MagicMock()
    client.post = AsyncMock(return_value=httpx.Response(status_code, json={"id": "email_123"}))
    return client


# ============ _get_email_client ============


def test_get_email_client_recreates_when_closed():
    closed_client = MagicMock()
    closed_client.is_closed = True

    with patch("app.services.email_service._email_client", closed_client):
        client = _get_email_client()
        assert client is not closed_client


# ============ build_trial_reminder_digest_email ============


def test_digest_lists_members():
    message = build_trial_reminder_digest_email([_entry()], "2026-03-17", "https://portal.test")

    assert message["subject"] == "1 trial(s) ending on 2026-03-17"
    assert "member0@test.com" in message["html"]
    assert "2026-03-17 10:00 UTC" in message["html"]
    assert "https://portal.test/admin/users" in message["text"]


def test_digest_escapes_user_input():
    message = build_trial_reminder_digest_email(
        [_entry(name="<script>alert(1)</script>")], "2026-03-17", "https://portal.test"
    )

    assert "<script>" not in message["html"]
    assert "&lt;script&gt;" in message["html"]


def test_digest_truncates_long_lists():
    entries = [_entry(i) for i in range(DIGEST_MAX_ROWS + 5)]

    message = build_trial_reminder_digest_email(entries, "2026-03-17", "https://portal.test")

    assert f"member{DIGEST_MAX_ROWS - 1}@test.com" in message["html"]
    assert f"member{DIGEST_MAX_ROWS}@test.com" not in message["html"]
    assert "...and 5 more." in message["html"]
    assert "...and 5 more." in message["text"]


# ============ send_email ============


@pytest.mark.asyncio
async def test_send_email_dev_mode_skips():
    """Without an API key nothing is sent and the caller is told so."""
    with patch.object(settings, "RESEND_API_KEY", ""), \
         patch("app.services.email_service._get_email_client") as mock_get_client:
        sent = await send_email("ops@test.com", {"subject": "s", "html": "h", "text": "t"}, "key-1")

    assert sent is False
    mock_get_client.assert_not_called()


@pytest.mark.asyncio
async def test_send_email_sets_idempotency_key():
    client = _mock_client()

    with patch.object(settings, "RESEND_API_KEY", "re_test"), \
         patch("app.services.email_service._get_email_client", return_value=client):
        sent = await send_email("ops@test.com", {"subject": "s", "html": "h", "text": "t"}, "trial-reminder-7d:2026-03-17")

    assert sent is True
    args, kwargs = client.post.call_args
    assert args[0] == RESEND_API_URL
    assert kwargs["headers"]["Idempotency-Key"] == "trial-reminder-7d:2026-03-17"
    assert kwargs["headers"]["Authorization"] == "Bearer re_test"
    assert kwargs["json"]["to"] == ["ops@test.com"]
    assert kwargs["json"]["subject"] == "s"


@pytest.mark.asyncio
async def test_send_email_api_error_returns_false():
    with patch.object(settings, "RESEND_API_KEY", "re_test"), \
         patch("app.services.email_service._get_email_client", return_value=_mock_client(500)):
        sent = await send_email("ops@test.com", {"subject": "s", "html": "h", "text": "t"}, "key-1")

    assert sent is False


@pytest.mark.asyncio
async def test_send_email_network_error_returns_false():
    client = MagicMock()
    client.post = AsyncMock(side_effect=httpx.ConnectError("connection refused"))

    with patch.object(settings, "RESEND_API_KEY", "re_test"), \
         patch("app.services.email_service._get_email_client", return_value=client):
        sent = await send_email("ops@test.com", {"subject": "s", "html": "h", "text": "t"}, "key-1")

    assert sent is False


@pytest.mark.asyncio
async def test_send_trial_reminder_digest_email():
    client = _mock_client()

    with patch.object(settings, "RESEND_API_KEY", "re_test"), \
         patch("app.services.email_service._get_email_client", return_value=client):
        sent = await send_trial_reminder_digest_email(
            "ops@test.com", [_entry()], "2026-03-17", "https://portal.test", "trial-reminder-7d:2026-03-17"
        )

    assert sent is True
    payload = client.post.call_args.kwargs["json"]
    assert payload["subject"] == "1 trial(s) ending on 2026-03-17"
    assert "member0@test.com" in payload["text"]
