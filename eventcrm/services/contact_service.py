"""Contact service - lookup, admin create and import, registration upsert and opt-out."""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from eventcrm.core.exceptions import ConflictError, ValidationError
from eventcrm.db.models import Contact
from eventcrm.db.session import begin_write
from eventcrm.schemas.contact import ContactCreate, ContactImportRow
from eventcrm.utils.normalization import (
    is_deliverable_email,
    normalize_email,
    normalize_name,
    normalize_phone,
)

logger = logging.getLogger(__name__)


def get_contact_by_email(db: Session, email: str) -> Contact | None:
    """Case-insensitive lookup (emails are stored lowercased)."""
    normalized = normalize_email(email)
    if not normalized:
        return None
    return db.query(Contact).filter(Contact.email == normalized).first()


def _merge_registration_fields(
    contact: Contact,
    *,
    first_name: str | None,
    last_name: str | None,
    phone: str | None,
    agree_updates: bool,
) -> None:
    # Only overwrite with supplied values; never blank out existing data
    if first_name:
        contact.first_name = first_name
    if last_name:
        contact.last_name = last_name
    if phone:
        contact.phone = phone
    # Registration can opt a contact back in, never out
    if agree_updates and contact.unsubscribed:
        contact.unsubscribed = False


def upsert_contact_for_registration(
    db: Session,
    *,
    email: str,
    first_name: str | None = None,
    last_name: str | None = None,
    phone: str | None = None,
    agree_updates: bool = False,
) -> Contact:
    """
    Find-or-create the contact for a registration and merge the form fields.

    Flushes but does not commit; the caller owns the transaction. A concurrent
    insert of the same email is resolved by re-reading the winning row.
    """
    normalized = normalize_email(email)
    if not normalized:
        raise ValidationError("Email is required")
    first_name = normalize_name(first_name)
    last_name = normalize_name(last_name)
    phone = normalize_phone(phone)

    contact = get_contact_by_email(db, normalized)
    if contact is None:
        try:
            with db.begin_nested():
                contact = Contact(
                    email=normalized,
                    first_name=first_name,
                    last_name=last_name,
                    phone=phone,
                    unsubscribed=not agree_updates,
                )
                db.add(contact)
                db.flush()
            return contact
        except IntegrityError:
            logger.info("Contact created concurrently, merging into existing row")
            contact = get_contact_by_email(db, normalized)
            if contact is None:
                raise

    _merge_registration_fields(
        contact,
        first_name=first_name,
        last_name=last_name,
        phone=phone,
        agree_updates=agree_updates,
    )
    db.flush()
    return contact


def create_contact(db: Session, data: ContactCreate) -> Contact:
    """Create a contact from the admin API. Raises ConflictError if the email exists."""
    normalized = normalize_email(data.email)
    if not is_deliverable_email(normalized):
        raise ValidationError("A valid email is required")

    begin_write(db)
    if get_contact_by_email(db, normalized):
        db.rollback()
        raise ConflictError("Contact already exists", code="CONTACT_EXISTS")

    contact = Contact(
        email=normalized,
        first_name=normalize_name(data.first_name),
        last_name=normalize_name(data.last_name),
        phone=normalize_phone(data.phone),
        tags=list(data.tags),
        unsubscribed=data.unsubscribed,
    )
    db.add(contact)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("Contact already exists", code="CONTACT_EXISTS")
    db.refresh(contact)
    logger.info("Contact %s created", contact.id)
    return contact


def import_contacts(db: Session, rows: list[ContactImportRow]) -> dict:
    """
    Bulk-insert contacts, skipping rows without a usable email.

    Existing contacts are left untouched and repeated emails within the batch
    count once. Returns ``{"imported": n, "requested": len(rows)}``.
    """
    by_email: dict[str, ContactImportRow] = {}
    for row in rows:
        email = normalize_email(row.email)
        if is_deliverable_email(email) and email not in by_email:
            by_email[email] = row
    if not by_email:
        raise ValidationError("No valid contacts found to import")

    begin_write(db)
    existing = {
        email
        for (email,) in db.query(Contact.email).filter(Contact.email.in_(list(by_email)))
    }

    imported = 0
    for email, row in by_email.items():
        if email in existing:
            continue
        try:
            with db.begin_nested():
                db.add(
                    Contact(
                        email=email,
                        first_name=normalize_name(row.first_name),
                        last_name=normalize_name(row.last_name),
                        phone=normalize_phone(row.phone),
                        tags=list(row.tags),
                    )
                )
                db.flush()
            imported += 1
        except IntegrityError:
            # Inserted concurrently; an import never overwrites
            continue
    db.commit()

    logger.info(
        "Contact import: %d imported of %d requested", imported, len(rows)
    )
    return {"imported": imported, "requested": len(rows)}


def unsubscribe_contact(db: Session, contact_id: UUID, *, commit: bool = True) -> bool:
    """Opt a contact out of campaigns. Returns True if the flag changed."""
    contact = db.get(Contact, contact_id)
    if not contact or contact.unsubscribed:
        return False
    contact.unsubscribed = True
    if commit:
        db.commit()
    else:
        db.flush()
    logger.info("Contact %s unsubscribed", contact_id)
    return True
