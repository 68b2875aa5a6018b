"""
Contact management service.

Handles CRUD operations for contacts with user scoping. Deleting a
contact removes its follow-up emails and synergy notes in the same
transaction.
"""

import csv
import logging
from io import StringIO
from typing import Iterable, Optional
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..errors import NotFoundError, ValidationError
from ..models import Contact, User, utcnow

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset({
    "name", "email", "phone", "company", "website",
    "position", "notes", "tags", "card_image_url",
})


def normalize_tags(tags: Optional[Iterable[str]]) -> list[str]:
    """Tags are a set: trimmed, de-duplicated and stored sorted."""
    if tags is None:
        return []
    if isinstance(tags, str):
        tags = tags.split(",")
    return sorted({str(tag).strip() for tag in tags if str(tag).strip()})


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _clean_email(value: Optional[str]) -> Optional[str]:
    value = _clean(value)
    return value.lower() if value else None


class ContactService:
    """Service for managing contacts."""

    def __init__(self, db: Session, user: User):
        self.db = db
        self.user = user

    def get_all(
        self,
        skip: int = 0,
        limit: int = 100,
        search: Optional[str] = None,
        tag: Optional[str] = None,
    ) -> list[Contact]:
        """
        Get all contacts for the current user, newest first.

        Args:
            skip: Number of records to skip (pagination)
            limit: Maximum records to return
            search: Search in name, email, company
            tag: Only contacts carrying this tag
        """
        query = self.db.query(Contact).filter(Contact.user_id == self.user.id)

        if search:
            search_term = f"%{search}%"
            query = query.filter(
                (Contact.name.ilike(search_term)) |
                (Contact.email.ilike(search_term)) |
                (Contact.company.ilike(search_term))
            )

        query = query.order_by(Contact.created_at.desc(), Contact.id)

        if tag:
            # Tags live in a JSON column, filter in Python to stay portable
            wanted = tag.strip()
            contacts = [c for c in query.all() if wanted in (c.tags or [])]
            return contacts[skip:skip + limit]

        return query.offset(skip).limit(limit).all()

    def get_count(self) -> int:
        """Get total count of contacts for the current user."""
        return self.db.query(Contact).filter(Contact.user_id == self.user.id).count()

    def get_by_id(self, contact_id: str) -> Optional[Contact]:
        """Get a contact by ID (scoped to current user)."""
        return self.db.query(Contact).filter(
            Contact.id == contact_id,
            Contact.user_id == self.user.id
        ).first()

    def require(self, contact_id: str) -> Contact:
        """Get a contact by ID or raise NotFoundError."""
        contact = self.get_by_id(contact_id)
        if not contact:
            raise NotFoundError(f"Contact {contact_id} not found")
        return contact

    def get_by_email(self, email: str) -> Optional[Contact]:
        """Get a contact by email (scoped to current user)."""
        return self.db.query(Contact).filter(
            Contact.email == email.lower().strip(),
            Contact.user_id == self.user.id
        ).first()

    def create(
        self,
        name: Optional[str],
        email: Optional[str] = None,
        phone: Optional[str] = None,
        company: Optional[str] = None,
        website: Optional[str] = None,
        position: Optional[str] = None,
        notes: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        card_image_url: Optional[str] = None,
    ) -> Contact:
        """Create a new contact. The name is required."""
        name = _clean(name)
        if not name:
            raise ValidationError("Contact name is required")

        contact = Contact(
            user_id=self.user.id,
            name=name,
            email=_clean_email(email),
            phone=_clean(phone),
            company=_clean(company),
            website=_clean(website),
            position=_clean(position),
            notes=notes or "",
            tags=normalize_tags(tags),
            card_image_url=card_image_url,
            created_at=utcnow(),
        )
        self.db.add(contact)
        self.db.flush()
        logger.info(f"Created contact {contact.id} ({contact.name})")
        return contact

    def update(self, contact_id: str, **kwargs) -> Contact:
        """Update a contact's fields."""
        unknown = set(kwargs) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}")

        if "name" in kwargs and not _clean(kwargs["name"]):
            raise ValidationError("Contact name is required")

        contact = self.require(contact_id)

        for key, value in kwargs.items():
            if key == "email":
                value = _clean_email(value)
            elif key == "tags":
                value = normalize_tags(value)
            elif key == "notes":
                value = value or ""
            elif key != "card_image_url":
                value = _clean(value)
            setattr(contact, key, value)

        contact.updated_at = utcnow()
        self.db.flush()
        return contact

    def delete(self, contact_id: str) -> int:
        """
        Delete a contact together with its follow-up emails and notes.

        Everything is removed in one flush, so the enclosing transaction
        either drops the contact and all of its emails or none of them.

        Returns:
            Number of follow-up emails removed with the contact.
        """
        contact = self.require(contact_id)

        emails = list(contact.emails)
        for email in emails:
            self.db.delete(email)
        if contact.synergy_note is not None:
            self.db.delete(contact.synergy_note)
        self.db.delete(contact)
        self.db.flush()

        logger.info(f"Deleted contact {contact_id} and {len(emails)} follow-up email(s)")
        return len(emails)

    def import_from_csv(self, csv_content: str) -> tuple[int, list[str]]:
        """
        Import contacts from CSV content.

        Args:
            csv_content: CSV file content as string

        Returns:
            Tuple of (imported_count, error_messages)
        """
        errors = []
        imported = 0

        # Handle BOM
        if csv_content.startswith('\ufeff'):
            csv_content = csv_content[1:]

        try:
            reader = csv.DictReader(StringIO(csv_content))

            for i, row in enumerate(reader, start=2):  # Start at 2 for header row
                name = (
                    row.get('Name') or
                    row.get('Full Name') or
                    row.get('name') or
                    " ".join(filter(None, [row.get('First Name'), row.get('Last Name')]))
                )

                if not (name or "").strip():
                    errors.append(f"Row {i}: Missing name")
                    continue

                email = row.get('Email') or row.get('Email Address') or row.get('email')

                # Check for duplicate
                if email and email.strip() and self.get_by_email(email):
                    errors.append(f"Row {i}: Email {email} already exists")
                    continue

                self.create(
                    name=name,
                    email=email,
                    phone=row.get('Phone') or row.get('phone'),
                    company=row.get('Company') or row.get('company'),
                    position=row.get('Position') or row.get('Job Title') or row.get('position'),
                    website=row.get('Website') or row.get('website'),
                    notes=row.get('Notes') or row.get('notes'),
                    tags=(row.get('Tags') or row.get('tags') or "").split(";"),
                )
                imported += 1

        except csv.Error as e:
            errors.append(f"CSV parsing error: {str(e)}")

        return imported, errors

    def export_to_csv(self) -> str:
        """Export all contacts to CSV format."""
        contacts = self.get_all(limit=10000)

        output = StringIO()
        fieldnames = [
            'Name', 'Email', 'Phone', 'Company',
            'Position', 'Website', 'Tags', 'Notes'
        ]
        writer = csv.DictWriter(output, fieldnames=fieldnames)
        writer.writeheader()

        for contact in contacts:
            writer.writerow({
                'Name': contact.name,
                'Email': contact.email or '',
                'Phone': contact.phone or '',
                'Company': contact.company or '',
                'Position': contact.position or '',
                'Website': contact.website or '',
                'Tags': ";".join(contact.tags or []),
                'Notes': contact.notes or '',
            })

        return output.getvalue()

    def get_stats(self) -> dict:
        """Get contact statistics for the current user."""
        total = self.get_count()

        with_email = (
            self.db.query(func.count(Contact.id))
            .filter(Contact.user_id == self.user.id, Contact.email.isnot(None), Contact.email != '')
            .scalar()
        )

        return {
            'total': total,
            'with_email': with_email,
            'without_email': total - with_email,
        }
