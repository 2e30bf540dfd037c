"""Resend webhook handler."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import time

from fastapi import HTTPException, Request
from sqlalchemy.orm import Session

from eventcrm.core.config import settings
from eventcrm.services import email_event_service

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300


def _pad_b64(value: str) -> str:
    return value + "=" * (-len(value) % 4)


def _decode_secret(secret: str) -> bytes | None:
    # Svix secrets are "whsec_" + base64; anything else is used as raw bytes
    if not secret.startswith("whsec_"):
        return secret.encode("utf-8")
    encoded = secret[6:]
    for decoder in (base64.b64decode, base64.urlsafe_b64decode):
        try:
            decoded = decoder(_pad_b64(encoded))
        except ValueError:
            continue
        if decoded:
            return decoded
    return None


def verify_svix_signature(
    body: bytes,
    headers: dict,
    secret: str,
    *,
    now: int | None = None,
) -> bool:
    """
    Verify a Resend webhook signature (Resend delivers through Svix).

    Signed content is "{svix-id}.{svix-timestamp}.{body}"; the
    ``svix-signature`` header holds space-separated "v1,<base64>" entries.
    """
    svix_id = headers.get("svix-id", "")
    svix_timestamp = headers.get("svix-timestamp", "")
    svix_signature = headers.get("svix-signature", "")

    if not svix_id or not svix_timestamp or not svix_signature:
        return False

    # Reject stale or malformed timestamps to prevent replay attacks.
    try:
        timestamp = int(svix_timestamp)
    except (TypeError, ValueError):
        return False
    current = int(time.time()) if now is None else now
    if abs(current - timestamp) > SIGNATURE_TOLERANCE_SECONDS:
        return False

    secret_bytes = _decode_secret(secret)
    if secret_bytes is None:
        logger.warning("Invalid Resend webhook signing secret: malformed whsec_ encoding")
        return False

    signed_payload = f"{svix_id}.{svix_timestamp}.".encode("utf-8") + body
    expected = base64.b64encode(
        hmac.new(secret_bytes, signed_payload, hashlib.sha256).digest()
    ).decode("utf-8")

    for sig_entry in svix_signature.split(" "):
        version, _, sig = sig_entry.partition(",")
        if version == "v1" and sig and hmac.compare_digest(sig, expected):
            return True
    return False


class ResendWebhookHandler:
    async def handle(self, request: Request, db: Session) -> dict:
        """
        Receive Resend delivery events (sent, delivered, opened, clicked,
        bounced, complained) and feed them into the email event log.

        Responses:
        - 400 only for unparseable JSON or a payload without type/data
        - 401 when a signing secret is configured and the signature fails
        - 200 otherwise, including for ignored events and internal errors,
          so the provider does not retry forever
        """
        body = await request.body()

        if len(body) > settings.WEBHOOK_MAX_PAYLOAD_BYTES:
            logger.warning("Resend webhook payload too large (%s bytes)", len(body))
            return {"status": "ok", "result": {"status": "ignored", "reason": "too_large"}}

        headers = {k.lower(): v for k, v in request.headers.items()}
        if settings.RESEND_WEBHOOK_SECRET:
            if not verify_svix_signature(body, headers, settings.RESEND_WEBHOOK_SECRET):
                logger.warning("Resend webhook invalid signature")
                raise HTTPException(status_code=401, detail="Invalid webhook signature")

        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("Resend webhook invalid JSON")
            raise HTTPException(status_code=400, detail="Invalid JSON")

        if (
            not isinstance(payload, dict)
            or not payload.get("type")
            or not isinstance(payload.get("data"), dict)
        ):
            raise HTTPException(status_code=400, detail="Missing type or data")

        try:
            result = email_event_service.ingest_provider_event(
                db, payload, message_id=headers.get("svix-id")
            )
        except Exception:
            db.rollback()
            logger.exception("Resend webhook processing failed: type=%s", payload.get("type"))
            return {"status": "ok", "result": {"status": "error"}}

        if result.status != "recorded":
            logger.info(
                "Resend webhook %s: %s (%s)", payload.get("type"), result.status, result.reason
            )
        return {"status": "ok", "result": result.to_dict()}
