"""Structured logging helpers (PII-safe)."""

from typing import Any


def mask_email(email: str | None) -> str:
    """Return a log-safe form of an email address (``abc...@domain``)."""
    if not email:
        return ""
    local, _, domain = email.partition("@")
    prefix = local[:3] if local else ""
    return f"{prefix}...@{domain}" if domain else f"{prefix}..."


def build_log_context(
    *,
    campaign_id: str | None = None,
    contact_id: str | None = None,
    event_id: str | None = None,
    job_id: str | None = None,
    route: str | None = None,
    method: str | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict for ``extra=``."""
    context: dict[str, Any] = {}
    if campaign_id:
        context["campaign_id"] = campaign_id
    if contact_id:
        context["contact_id"] = contact_id
    if event_id:
        context["event_id"] = event_id
    if job_id:
        context["job_id"] = job_id
    if route:
        context["route"] = route
    if method:
        context["method"] = method
    return context
