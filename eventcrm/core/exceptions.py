"""Domain exceptions shared by services and routers.

Services raise these; routers (or the app-level handler in ``main``) turn
them into HTTP responses. Each carries a stable ``code`` the scanner/admin UI
can switch on.
"""

from __future__ import annotations

from typing import Any


class CRMError(Exception):
    status_code = 400
    code = "ERROR"

    def __init__(self, message: str | None = None, *, code: str | None = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code:
            self.code = code

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code}


class ValidationError(CRMError):
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(CRMError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(CRMError):
    status_code = 409
    code = "CONFLICT"


class InvalidStateError(CRMError):
    status_code = 400
    code = "INVALID_STATE"


class TransientDependencyError(CRMError):
    """An upstream dependency (mail provider) failed; safe to retry later."""

    status_code = 502
    code = "DEPENDENCY_FAILED"


class DeliveryUnknownError(TransientDependencyError):
    """The request may have reached the provider; its outcome is unknown.

    Re-sending through another path could deliver twice.
    """

    code = "DELIVERY_UNKNOWN"


class AlreadyRegisteredError(ConflictError):
    code = "ALREADY_REGISTERED"


class EventFullError(ConflictError):
    code = "EVENT_FULL"


class AlreadyCheckedInError(ConflictError):
    """Raised when a ticket was already scanned; carries the original scan."""

    code = "ALREADY_CHECKED_IN"

    def __init__(self, attendance, message: str | None = None):
        super().__init__(message or "Ticket already checked in")
        self.attendance = attendance


class TicketCancelledError(InvalidStateError):
    code = "CANCELLED"
