"""
Client-side data façade.

Keeps an in-memory mirror of the signed-in user's contacts and
follow-up emails and routes every user action through the services.

Cache rules:
- Changing the signed-in user drops the mirror and refetches it.
- Local mutations are applied optimistically, then replaced by what the
  store returns; if the store call fails the local change is undone.
- refresh() reconciles the whole mirror with the store.

Every mutation reports its outcome through the notifier as a short
title and a human-readable description, and failures are re-raised.
"""

import logging
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

from sqlalchemy.orm import Session

from .database import SessionFactory, get_db
from .dispatch import DispatchEngine, DispatchReport
from .errors import SynergyError, ValidationError
from .extraction import ExtractedContact
from .llm import TextGenerator
from .models import EmailStatus, User
from .services import (
    BusinessCardService, ContactService, FollowUpEmailService, GenerationService
)
from .storage import CardImageStorage
from .transport import MailTransport, get_transport

logger = logging.getLogger(__name__)

Notifier = Callable[[str, str, bool], None]

# Wire field names used by the mirror, mapped to service keyword arguments
CONTACT_FIELDS = {
    "name": "name",
    "email": "email",
    "phone": "phone",
    "company": "company",
    "website": "website",
    "position": "position",
    "notes": "notes",
    "tags": "tags",
}
EMAIL_FIELDS = {
    "subject": "subject",
    "body": "body",
    "status": "status",
    "scheduledDate": "scheduled_date",
}


def _log_notifier(title: str, description: str, error: bool = False) -> None:
    if error:
        logger.warning(f"{title}: {description}")
    else:
        logger.info(f"{title}: {description}")


def _to_kwargs(fields: dict, mapping: dict) -> dict:
    unknown = set(fields) - set(mapping)
    if unknown:
        raise ValidationError(f"Unknown field(s): {', '.join(sorted(unknown))}")
    return {mapping[key]: value for key, value in fields.items()}


class DataFacade:
    """In-process cache and coordinator for the interactive client."""

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        transport: Optional[MailTransport] = None,
        generator: Optional[TextGenerator] = None,
        storage: Optional[CardImageStorage] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.session_factory = session_factory
        self._transport = transport
        self._generator = generator
        self._storage = storage
        self.notify = notifier or _log_notifier

        self.user_id: Optional[str] = None
        self._contacts: dict[str, dict] = {}
        self._emails: dict[str, dict] = {}

    # ========================================
    # Collaborators
    # ========================================

    @property
    def transport(self) -> MailTransport:
        if self._transport is None:
            self._transport = get_transport()
        return self._transport

    @property
    def generator(self) -> TextGenerator:
        if self._generator is None:
            self._generator = TextGenerator()
        return self._generator

    @contextmanager
    def _session(self) -> Iterator[tuple[Session, User]]:
        if self.user_id is None:
            raise ValidationError("No user is signed in")
        with get_db(self.session_factory) as db:
            user = db.get(User, self.user_id)
            if user is None or not user.is_active:
                raise ValidationError("Signed-in user no longer exists")
            yield db, user

    # ========================================
    # Cache management
    # ========================================

    def set_user(self, user_id: Optional[str]) -> None:
        """Switch the signed-in user; the mirror is dropped and refetched."""
        if user_id == self.user_id:
            return
        self.user_id = user_id
        self._contacts.clear()
        self._emails.clear()
        if user_id is not None:
            self.refresh()

    def refresh(self) -> None:
        """Replace the mirror with the store's current state."""
        with self._session() as (db, user):
            contacts = ContactService(db, user).get_all(limit=100000)
            emails = FollowUpEmailService(db, user).list_all(limit=100000)
            self._contacts = {c.id: c.to_dict() for c in contacts}
            self._emails = {e.id: e.to_dict() for e in emails}

    # ========================================
    # Reads (served from the mirror)
    # ========================================

    @property
    def contacts(self) -> list[dict]:
        """Contacts, newest first."""
        return sorted(
            self._contacts.values(),
            key=lambda c: c.get("createdAt") or "",
            reverse=True,
        )

    @property
    def emails(self) -> list[dict]:
        return list(self._emails.values())

    def get_contact_by_id(self, contact_id: str) -> Optional[dict]:
        return self._contacts.get(contact_id)

    def get_emails_for_contact(self, contact_id: str) -> list[dict]:
        return [e for e in self._emails.values() if e["contactId"] == contact_id]

    # ========================================
    # Contacts
    # ========================================

    def add_contact(self, **fields: Any) -> dict:
        placeholder_id = f"pending-{uuid.uuid4().hex[:9]}"
        self._contacts[placeholder_id] = {"id": placeholder_id, "tags": [], **fields}

        try:
            kwargs = _to_kwargs(fields, CONTACT_FIELDS)
            with self._session() as (db, user):
                contact = ContactService(db, user).create(**kwargs).to_dict()
        except SynergyError as e:
            self.notify("Could not add contact", e.message, True)
            raise
        finally:
            self._contacts.pop(placeholder_id, None)

        self._contacts[contact["id"]] = contact
        self.notify("Contact added", f"{contact['name']} has been added to your contacts.", False)
        return contact

    def update_contact(self, contact_id: str, **fields: Any) -> dict:
        previous = self._contacts.get(contact_id)
        if previous is not None:
            self._contacts[contact_id] = {**previous, **fields}

        try:
            kwargs = _to_kwargs(fields, CONTACT_FIELDS)
            with self._session() as (db, user):
                contact = ContactService(db, user).update(contact_id, **kwargs).to_dict()
        except SynergyError as e:
            if previous is not None:
                self._contacts[contact_id] = previous
            self.notify("Could not update contact", e.message, True)
            raise

        self._contacts[contact_id] = contact
        self.notify("Contact updated", "Contact information has been updated.", False)
        return contact

    def delete_contact(self, contact_id: str) -> None:
        previous = self._contacts.pop(contact_id, None)
        removed_emails = {
            eid: e for eid, e in self._emails.items() if e["contactId"] == contact_id
        }
        for eid in removed_emails:
            del self._emails[eid]

        try:
            with self._session() as (db, user):
                ContactService(db, user).delete(contact_id)
        except SynergyError as e:
            if previous is not None:
                self._contacts[contact_id] = previous
            self._emails.update(removed_emails)
            self.notify("Could not delete contact", e.message, True)
            raise

        self.notify("Contact deleted", "Contact and associated emails have been removed.", False)

    def scan_card(
        self,
        image_bytes: bytes,
        content_type: str = "image/jpeg",
    ) -> tuple[dict, ExtractedContact]:
        try:
            with self._session() as (db, user):
                service = BusinessCardService(
                    db, user, generator=self.generator, storage=self._storage
                )
                contact, extraction = service.scan(image_bytes, content_type)
                contact = contact.to_dict()
        except SynergyError as e:
            self.notify("Card scan failed", e.message, True)
            raise

        self._contacts[contact["id"]] = contact
        self.notify("Card scanned", f"{contact['name']} has been added. Review the details.", False)
        return contact, extraction

    # ========================================
    # Emails
    # ========================================

    def add_email(
        self,
        contact_id: str,
        subject: str,
        body: str,
        status: Any = EmailStatus.DRAFT,
        scheduled_date: Any = None,
    ) -> dict:
        """Create an email record. Unknown status values fall back to draft."""
        status = EmailStatus.coerce(status)
        try:
            with self._session() as (db, user):
                email = FollowUpEmailService(db, user).create(
                    contact_id, subject, body, status, scheduled_date
                ).to_dict()
        except SynergyError as e:
            self.notify("Could not create email", e.message, True)
            raise

        self._emails[email["id"]] = email
        if email["status"] == EmailStatus.SCHEDULED.value:
            self.notify("Email created", f"Email scheduled to be sent on {email['scheduledDate']}.", False)
        else:
            self.notify("Email created", "Email has been created.", False)
        return email

    def update_email(self, email_id: str, **fields: Any) -> dict:
        previous = self._emails.get(email_id)

        try:
            kwargs = _to_kwargs(fields, EMAIL_FIELDS)
            if "status" in kwargs:
                kwargs["status"] = EmailStatus.coerce(kwargs["status"])
            if previous is not None:
                local = {**previous, **fields}
                if "status" in kwargs:
                    local["status"] = kwargs["status"].value
                self._emails[email_id] = local

            with self._session() as (db, user):
                email = FollowUpEmailService(db, user).update(email_id, **kwargs).to_dict()
        except SynergyError as e:
            if previous is not None:
                self._emails[email_id] = previous
            self.notify("Could not update email", e.message, True)
            raise

        self._emails[email_id] = email
        self.notify("Email updated", "Email has been updated.", False)
        return email

    def delete_email(self, email_id: str) -> None:
        previous = self._emails.pop(email_id, None)
        try:
            with self._session() as (db, user):
                FollowUpEmailService(db, user).delete(email_id)
        except SynergyError as e:
            if previous is not None:
                self._emails[email_id] = previous
            self.notify("Could not delete email", e.message, True)
            raise

        self.notify("Email deleted", "Email has been removed.", False)

    def generate_email(self, contact_id: str, notes: Optional[str] = None) -> str:
        try:
            with self._session() as (db, user):
                text = GenerationService(db, user, generator=self.generator).generate(
                    contact_id, notes
                )
        except SynergyError as e:
            self.notify("Generation failed", e.message, True)
            raise
        return text

    def schedule_email(self, contact_id: str, subject: str, body: str, scheduled_date: Any) -> dict:
        return self.add_email(
            contact_id, subject, body,
            status=EmailStatus.SCHEDULED, scheduled_date=scheduled_date,
        )

    def send_email(self, contact_id: str, subject: str, body: str) -> dict:
        """Send now. Nothing is recorded unless delivery succeeds."""
        try:
            with self._session() as (db, user):
                email = FollowUpEmailService(db, user).send_now(
                    contact_id, subject, body, self.transport
                ).to_dict()
        except SynergyError as e:
            self.notify("Sending failed", e.message, True)
            raise

        self._emails[email["id"]] = email
        contact = self._contacts.get(contact_id)
        name = contact["name"] if contact else "your contact"
        self.notify("Email sent", f"Your follow-up email to {name} has been sent.", False)
        return email

    def dispatch_due(self) -> DispatchReport:
        """Run one dispatch pass, then reconcile the mirror."""
        report = DispatchEngine(
            transport=self.transport, session_factory=self.session_factory
        ).run_once()
        if self.user_id is not None:
            self.refresh()
        return report
