"""Log masking for PII shipped to log aggregators and Sentry.

Referred users' and operators' emails only ever appear masked in logs.
"""


def mask_email(email: str | None) -> str:
    """'user@domain.com' -> 'u***@domain.com'; anything unparseable -> '***'."""
    if not email or "@" not in email:
        return "***"
    local, domain = email.rsplit("@", 1)
    return f"{local[:1]}***@{domain}"
