"""Data normalization utilities for consistent contact data."""

import re
from typing import Optional

# Deliberately loose: anything@anything.tld. Strict validation happens in the
# request schemas; this only guards the send path against junk rows.
_EMAIL_SHAPE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(email: Optional[str]) -> Optional[str]:
    """
    Normalize email to lowercase.

    Args:
        email: Raw email input

    Returns:
        Lowercased email or None if empty
    """
    if not email:
        return None
    cleaned = email.strip().lower()
    return cleaned or None


def is_deliverable_email(email: Optional[str]) -> bool:
    """True if the address is syntactically usable for sending."""
    return bool(email) and bool(_EMAIL_SHAPE.match(email))


def normalize_name(name: Optional[str]) -> Optional[str]:
    """
    Normalize name by stripping whitespace and collapsing multiple spaces.

    Args:
        name: Raw name input

    Returns:
        Cleaned name or None if empty
    """
    if not name:
        return None
    collapsed = " ".join(name.split())
    return collapsed or None


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """
    Normalize phone to digits with an optional leading ``+``.

    Registration accepts international numbers, so no country format is
    enforced; returns None when no digits remain.
    """
    if not phone:
        return None
    cleaned = phone.strip()
    digits = re.sub(r"\D", "", cleaned)
    if not digits:
        return None
    return f"+{digits}" if cleaned.startswith("+") else digits


def extract_email_domain(email: Optional[str]) -> Optional[str]:
    """
    Extract lowercased email domain.

    Expects a normalized email, but will normalize if needed.
    """
    normalized = normalize_email(email)
    if not normalized or "@" not in normalized:
        return None
    return normalized.split("@", 1)[1]


def normalize_search_text(value: Optional[str]) -> Optional[str]:
    """Lowercase and collapse whitespace for search matching."""
    if not value:
        return None
    collapsed = " ".join(value.split())
    if not collapsed:
        return None
    return collapsed.lower()


def escape_like(value: str, escape_char: str = "\\") -> str:
    """Escape LIKE wildcards so user input matches literally."""
    return (
        value.replace(escape_char, escape_char * 2)
        .replace("%", f"{escape_char}%")
        .replace("_", f"{escape_char}_")
    )
