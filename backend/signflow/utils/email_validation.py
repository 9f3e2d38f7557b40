from __future__ import annotations

from functools import lru_cache

from email_validator import EmailNotValidError, validate_email


@lru_cache(maxsize=512)
def _validate_format_only(candidate: str) -> str:
    """Normalize addresses validating only syntax/IDNA information."""
    info = validate_email(candidate, check_deliverability=False)
    return info.normalized


def normalize_signer_email(value: str | None) -> str:
    """Return a normalized signer e-mail; raises ``ValueError`` when malformed.

    Only the syntax is checked, never deliverability.
    """
    candidate = (value or "").strip()
    if not candidate:
        raise ValueError("E-mail is required")
    try:
        return _validate_format_only(candidate.lower())
    except EmailNotValidError as exc:
        raise ValueError(f"Invalid e-mail: {exc}") from exc
