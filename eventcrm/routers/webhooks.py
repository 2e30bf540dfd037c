"""Webhooks router - email provider delivery events."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from eventcrm.core.config import settings
from eventcrm.core.deps import get_db
from eventcrm.core.rate_limit import limiter
from eventcrm.services.webhooks.resend import ResendWebhookHandler

router = APIRouter()

_resend_handler = ResendWebhookHandler()


@router.post("/email")
@limiter.limit(f"{settings.RATE_LIMIT_WEBHOOK}/minute")
async def receive_email_webhook(request: Request, db: Session = Depends(get_db)):
    """Receive Resend delivery events. Always 200 unless the body is unusable."""
    return await _resend_handler.handle(request, db)
