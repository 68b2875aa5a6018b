"""
Follow-up email service.

Owns the follow-up email records: creation against a live contact,
user edits constrained by the status lifecycle, and the immediate
send path. Scheduled delivery is handled by the dispatch engine.
"""

import logging
from datetime import datetime
from typing import Any, Optional
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..errors import InvalidReferenceError, NotFoundError, ValidationError
from ..models import (
    Contact, EmailStatus, FollowUpEmail, User, USER_TRANSITIONS, to_utc, utcnow
)
from ..transport import MailTransport

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset({"subject", "body", "status", "scheduled_date"})

# States a record may be created in through create(); sent records only
# come from send_now() and failed ones only from dispatch.
CREATABLE_STATUSES = frozenset({EmailStatus.DRAFT, EmailStatus.SCHEDULED})


def parse_datetime(value: Any) -> Optional[datetime]:
    """Accept a datetime or an ISO-8601 string; return naive UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    try:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return to_utc(datetime.fromisoformat(text))
    except ValueError:
        raise ValidationError(f"Invalid date '{value}', expected ISO-8601")


def _require_text(value: Optional[str], label: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"Email {label} is required")
    return str(value)


class FollowUpEmailService:
    """Service for managing follow-up email records."""

    def __init__(self, db: Session, user: User):
        self.db = db
        self.user = user

    def _query(self):
        return (
            self.db.query(FollowUpEmail)
            .join(Contact, FollowUpEmail.contact_id == Contact.id)
            .filter(Contact.user_id == self.user.id)
        )

    def _get_contact(self, contact_id: str) -> Optional[Contact]:
        return self.db.query(Contact).filter(
            Contact.id == contact_id,
            Contact.user_id == self.user.id
        ).first()

    def get_by_id(self, email_id: str) -> Optional[FollowUpEmail]:
        """Get an email by ID (scoped to current user)."""
        return self._query().filter(FollowUpEmail.id == email_id).first()

    def require(self, email_id: str) -> FollowUpEmail:
        email = self.get_by_id(email_id)
        if not email:
            raise NotFoundError(f"Email {email_id} not found")
        return email

    def list_for_contact(self, contact_id: str) -> list[FollowUpEmail]:
        """All emails bound to one contact, most recent first."""
        return (
            self._query()
            .filter(FollowUpEmail.contact_id == contact_id)
            .order_by(FollowUpEmail.created_at.desc(), FollowUpEmail.id)
            .all()
        )

    def list_all(
        self,
        status: Optional[EmailStatus] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> list[FollowUpEmail]:
        """
        Get emails for the current user.

        Scheduled emails come soonest first, everything else most recent first.
        """
        query = self._query()

        if status is not None:
            query = query.filter(FollowUpEmail.status == status)

        if status == EmailStatus.SCHEDULED:
            query = query.order_by(FollowUpEmail.scheduled_date.asc(), FollowUpEmail.id)
        else:
            query = query.order_by(FollowUpEmail.created_at.desc(), FollowUpEmail.id)

        return query.offset(skip).limit(limit).all()

    def create(
        self,
        contact_id: str,
        subject: str,
        body: str,
        status: EmailStatus | str = EmailStatus.DRAFT,
        scheduled_date: Optional[datetime | str] = None,
    ) -> FollowUpEmail:
        """
        Create a draft or scheduled email for a contact.

        Raises:
            ValidationError: bad status, blank subject/body, or a
                scheduled email without a date.
            InvalidReferenceError: the contact does not exist.
        """
        status = EmailStatus.parse(status)
        if status not in CREATABLE_STATUSES:
            raise ValidationError(
                f"Emails cannot be created as '{status.value}'; "
                "use draft or scheduled, or send it now"
            )
        subject = _require_text(subject, "subject")
        body = _require_text(body, "body")
        scheduled_date = parse_datetime(scheduled_date)
        if status == EmailStatus.SCHEDULED and scheduled_date is None:
            raise ValidationError("A scheduled email needs a scheduled date")

        if not contact_id:
            raise ValidationError("contactId is required")
        if not self._get_contact(contact_id):
            raise InvalidReferenceError(f"Contact {contact_id} does not exist")

        email = FollowUpEmail(
            contact_id=contact_id,
            subject=subject,
            body=body,
            status=status,
            scheduled_date=scheduled_date,
            created_at=utcnow(),
        )
        self.db.add(email)
        self.db.flush()
        logger.info(f"Created {status.value} email {email.id} for contact {contact_id}")
        return email

    def update(self, email_id: str, **kwargs) -> FollowUpEmail:
        """
        Apply a user edit.

        Only drafts and scheduled emails can be edited, and the status may
        only move along USER_TRANSITIONS.
        """
        unknown = set(kwargs) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}")

        changes: dict[str, Any] = {}
        if "subject" in kwargs:
            changes["subject"] = _require_text(kwargs["subject"], "subject")
        if "body" in kwargs:
            changes["body"] = _require_text(kwargs["body"], "body")
        if "status" in kwargs:
            changes["status"] = EmailStatus.parse(kwargs["status"])
        if "scheduled_date" in kwargs:
            changes["scheduled_date"] = parse_datetime(kwargs["scheduled_date"])

        email = self.require(email_id)

        if email.status not in (EmailStatus.DRAFT, EmailStatus.SCHEDULED):
            raise ValidationError(f"A {email.status.value} email cannot be edited")
        if email.claim_token is not None:
            raise ValidationError("Email is being delivered and cannot be edited")

        new_status = changes.get("status", email.status)
        if new_status not in USER_TRANSITIONS[email.status]:
            raise ValidationError(
                f"Cannot change email status from {email.status.value} to {new_status.value}"
            )
        new_date = changes.get("scheduled_date", email.scheduled_date)
        if new_status == EmailStatus.SCHEDULED and new_date is None:
            raise ValidationError("A scheduled email needs a scheduled date")

        for key, value in changes.items():
            setattr(email, key, value)

        email.updated_at = utcnow()
        self.db.flush()
        return email

    def schedule(self, email_id: str, scheduled_date: datetime | str) -> FollowUpEmail:
        """Move a draft (or reschedule a scheduled email) to the given time."""
        return self.update(
            email_id, status=EmailStatus.SCHEDULED, scheduled_date=scheduled_date
        )

    def delete(self, email_id: str) -> None:
        email = self.require(email_id)
        self.db.delete(email)
        self.db.flush()

    def send_now(
        self,
        contact_id: str,
        subject: str,
        body: str,
        transport: MailTransport,
    ) -> FollowUpEmail:
        """
        Deliver an email immediately and record it as sent.

        The record is only created after the transport succeeds; a
        TransportError propagates and leaves nothing behind.
        """
        subject = _require_text(subject, "subject")
        body = _require_text(body, "body")

        if not contact_id:
            raise ValidationError("contactId is required")
        contact = self._get_contact(contact_id)
        if not contact:
            raise InvalidReferenceError(f"Contact {contact_id} does not exist")
        if not contact.has_email:
            raise ValidationError(f"{contact.name} has no email address")

        transport.send(
            to=contact.email,
            subject=subject,
            body=body,
            sender_name=self.user.full_name,
            reply_to=self.user.sender_email,
        )

        now = utcnow()
        email = FollowUpEmail(
            contact_id=contact.id,
            subject=subject,
            body=body,
            status=EmailStatus.SENT,
            scheduled_date=now,
            sent_at=now,
            created_at=now,
        )
        self.db.add(email)
        self.db.flush()
        logger.info(f"Sent email {email.id} to {contact.email}")
        return email

    def get_stats(self) -> dict:
        """Count emails per status for the current user."""
        rows = (
            self.db.query(FollowUpEmail.status, func.count(FollowUpEmail.id))
            .join(Contact, FollowUpEmail.contact_id == Contact.id)
            .filter(Contact.user_id == self.user.id)
            .group_by(FollowUpEmail.status)
            .all()
        )
        counts = {status.value: 0 for status in EmailStatus}
        counts.update({status.value: count for status, count in rows})

        attempted = counts["sent"] + counts["failed"]
        counts["success_rate"] = round(counts["sent"] / attempted * 100, 1) if attempted else 0
        return counts
