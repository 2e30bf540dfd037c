"""Transactional email job handlers."""

from __future__ import annotations

import logging
from uuid import UUID

from eventcrm.core.structured_logging import mask_email
from eventcrm.db.enums import AttendanceStatus
from eventcrm.db.models import Attendance, SyncLog
from eventcrm.services import ticket_service
from eventcrm.services.email_transport import build_transport_chain

logger = logging.getLogger(__name__)

CONFIRMATION_OPERATION = "registration_confirmation"


def _log_sync(db, *, service: str, status: str, records: int = 0, error: str | None = None) -> None:
    db.add(
        SyncLog(
            service=service,
            operation=CONFIRMATION_OPERATION,
            status=status,
            records_affected=records,
            error_message=error[:2000] if error else None,
        )
    )
    db.commit()


async def process_registration_confirmation(db, job) -> None:
    """
    Send the ticket email for a new registration.

    Payload:
        - attendance_id: UUID of the attendance (ticket)

    Every attempt is recorded in sync_logs; a failure re-raises so the worker
    retries with backoff.
    """
    payload = job.payload or {}
    attendance_id = payload.get("attendance_id")
    if not attendance_id:
        raise Exception("Missing attendance_id in registration confirmation job")

    attendance = db.get(Attendance, UUID(attendance_id))
    if not attendance:
        raise Exception(f"Attendance {attendance_id} not found")
    if attendance.status == AttendanceStatus.CANCELLED.value:
        logger.info("Attendance %s cancelled, skipping confirmation", attendance_id)
        return

    message = ticket_service.build_ticket_email(attendance)
    chain = build_transport_chain()
    try:
        receipt = await chain.send(message)
    except Exception as e:
        _log_sync(db, service="email", status="error", error=str(e))
        logger.warning(
            "Ticket email to %s failed: %s", mask_email(message.to), type(e).__name__
        )
        raise

    _log_sync(db, service=receipt.provider, status="success", records=1)
    logger.info(
        "Ticket email sent to %s via %s (attendance=%s)",
        mask_email(message.to),
        receipt.provider,
        attendance_id,
    )
