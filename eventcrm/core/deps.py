"""FastAPI dependencies for database access and staff authorization."""

import hmac
from typing import Generator

from fastapi import Header, HTTPException
from sqlalchemy.orm import Session

from eventcrm.core.config import settings
from eventcrm.db.session import SessionLocal


ADMIN_KEY_HEADER = "X-Admin-Key"


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def require_admin_key(
    x_admin_key: str | None = Header(default=None, alias=ADMIN_KEY_HEADER),
) -> None:
    """
    Guard staff routes (check-in scanner, campaign admin).

    User accounts are out of scope; a shared key is enough to keep the public
    internet off these routes. When ADMIN_API_KEY is unset (local dev) the
    guard is open.

    Raises:
        HTTPException 401: Missing or wrong key
    """
    expected = settings.ADMIN_API_KEY
    if not expected:
        return
    if not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        raise HTTPException(status_code=401, detail="Invalid admin key")


def verify_internal_secret(x_internal_secret: str = Header(...)) -> None:
    """Verify the internal secret header used by cron callers."""
    expected = settings.INTERNAL_SECRET
    if not expected:
        raise HTTPException(status_code=501, detail="INTERNAL_SECRET not configured")
    if not hmac.compare_digest(x_internal_secret, expected):
        raise HTTPException(status_code=403, detail="Invalid internal secret")
