"""Contacts router - admin create and bulk import."""

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from eventcrm.core.deps import get_db, require_admin_key
from eventcrm.schemas.contact import (
    ContactCreate,
    ContactImportRequest,
    ContactImportResult,
    ContactRead,
)
from eventcrm.services import contact_service

router = APIRouter(dependencies=[Depends(require_admin_key)])


@router.post("", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(data: ContactCreate, db: Session = Depends(get_db)):
    """Create a contact. 409 CONTACT_EXISTS if the email is already known."""
    return contact_service.create_contact(db, data)


@router.post("/import", response_model=ContactImportResult)
def import_contacts(data: ContactImportRequest, db: Session = Depends(get_db)):
    """
    Bulk import contacts.

    Rows without a valid email are skipped and existing contacts are left
    as they are. 400 if no row has a usable email.
    """
    return contact_service.import_contacts(db, data.contacts)
