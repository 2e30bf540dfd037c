"""Ticket tokens and QR rendering."""

from __future__ import annotations

import base64
import html
import secrets
from io import BytesIO

import qrcode
from sqlalchemy.orm import Session

from eventcrm.core.config import settings
from eventcrm.db.models import Attendance
from eventcrm.services.email_transport import OutboundEmail
from eventcrm.utils.datetime_utils import ensure_utc

# 32 random bytes -> 43 url-safe characters
TOKEN_BYTES = 32


def token_exists(db: Session, token: str) -> bool:
    return (
        db.query(Attendance.id).filter(Attendance.qr_code_data == token).first()
        is not None
    )


def generate_ticket_token(db: Session) -> str:
    """
    Draw an unguessable ticket token not held by any attendance.

    The unique index on ``attendance.qr_code_data`` remains the final
    guarantee; this loop only makes a collision at insert time unlikely.
    """
    for _ in range(settings.TICKET_TOKEN_MAX_ATTEMPTS):
        token = secrets.token_urlsafe(TOKEN_BYTES)
        if not token_exists(db, token):
            return token
    raise RuntimeError("Could not generate a unique ticket token")


def qr_code_png(token: str) -> bytes:
    """Render the ticket token as a PNG QR code."""
    image = qrcode.make(token)
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def qr_code_data_uri(token: str) -> str:
    encoded = base64.b64encode(qr_code_png(token)).decode("ascii")
    return f"data:image/png;base64,{encoded}"


def build_ticket_email(attendance: Attendance) -> OutboundEmail:
    """Confirmation email carrying the QR ticket (inline image + PNG attachment)."""
    contact = attendance.contact
    event = attendance.event
    png = qr_code_png(attendance.qr_code_data)
    encoded = base64.b64encode(png).decode("ascii")
    event_date = ensure_utc(event.event_date)
    when = event_date.strftime("%A, %B %d, %Y at %H:%M UTC") if event_date else ""
    greeting = html.escape(contact.first_name or "there")

    details = [f"<p><strong>{html.escape(event.name)}</strong></p>"]
    if when:
        details.append(f"<p>{when}</p>")
    if event.location:
        details.append(f"<p>{html.escape(event.location)}</p>")

    body_html = (
        "<html><body>"
        f"<p>Hi {greeting},</p>"
        "<p>You're registered! Show this QR code at the door to check in.</p>"
        + "".join(details)
        + f'<p><img src="data:image/png;base64,{encoded}" alt="Your ticket" '
        'width="240" height="240" /></p>'
        "<p>The ticket is also attached to this email.</p>"
        "</body></html>"
    )
    body_text = "\n".join(
        line
        for line in (
            f"Hi {contact.first_name or 'there'},",
            "You're registered! Show the attached QR code at the door to check in.",
            event.name,
            when,
            event.location or "",
        )
        if line
    )
    return OutboundEmail(
        to=contact.email,
        subject=f"Your ticket for {event.name}",
        html=body_html,
        text=body_text,
        from_email=settings.EMAIL_FROM,
        from_name=settings.EMAIL_FROM_NAME,
        idempotency_key=f"ticket/{attendance.id}",
        attachments=({"filename": "ticket.png", "content": encoded},),
    )
