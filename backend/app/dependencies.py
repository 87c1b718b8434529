import secrets

import structlog
from fastapi import Header, HTTPException, status

from app.config import settings

logger = structlog.get_logger()


async def verify_internal_api_key(x_internal_key: str = Header(default="")) -> None:
    """Guard for billing webhooks, cron triggers and back-office reads.

    Callers are other services, never end users, so a shared secret in the
    ``X-Internal-Key`` header is the only credential.
    """
    if not settings.INTERNAL_API_KEY:
        logger.error("internal_api_key_not_configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Internal API not configured",
        )
    if not secrets.compare_digest(x_internal_key.encode(), settings.INTERNAL_API_KEY.encode()):
        logger.warning("internal_api_key_rejected")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid internal API key",
        )
