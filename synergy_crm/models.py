"""
SQLAlchemy database models for the Synergy CRM.

This module defines the user account, contacts, the synergy note ledger
and the follow-up email records with their status lifecycle.
"""

import enum
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Column, String, Text, Boolean, DateTime, ForeignKey,
    JSON, Enum as SQLEnum, Index
)
from sqlalchemy.orm import relationship, declarative_base

from .errors import ValidationError

Base = declarative_base()

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Current time as naive UTC, the form every timestamp is stored in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc(value: datetime) -> datetime:
    """Normalize an aware or naive datetime to naive UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _new_id() -> str:
    return str(uuid.uuid4())


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).isoformat()


class EmailStatus(enum.Enum):
    """Status of a follow-up email."""
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENT = "sent"
    FAILED = "failed"

    @classmethod
    def parse(cls, value: Any) -> "EmailStatus":
        """Strictly parse a wire value, rejecting anything unknown."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(
                f"Invalid email status '{value}'. "
                f"Expected one of: {', '.join(s.value for s in cls)}"
            )

    @classmethod
    def coerce(cls, value: Any) -> "EmailStatus":
        """Leniently parse a wire value; unknown or missing values become draft."""
        if value is None or value == "":
            return cls.DRAFT
        try:
            return cls.parse(value)
        except ValidationError:
            logger.warning(f"Coercing unknown email status {value!r} to draft")
            return cls.DRAFT


# Statuses a user edit may move a record into, keyed by its current status.
# Nothing leads back into draft; sent and failed are only reached through delivery.
USER_TRANSITIONS: dict[EmailStatus, set[EmailStatus]] = {
    EmailStatus.DRAFT: {EmailStatus.DRAFT, EmailStatus.SCHEDULED},
    EmailStatus.SCHEDULED: {EmailStatus.SCHEDULED},
    EmailStatus.SENT: {EmailStatus.SENT},
    EmailStatus.FAILED: {EmailStatus.FAILED},
}


class User(Base):
    """User account owning contacts and follow-up emails."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_new_id)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    full_name = Column(String(255), nullable=False)
    sender_email = Column(String(255), nullable=True)  # Reply-to shown on sent mail
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)
    last_login_at = Column(DateTime, nullable=True)

    # Relationships
    contacts = relationship("Contact", back_populates="user", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<User {self.email}>"


class Contact(Base):
    """A networking contact, usually captured from a business card."""
    __tablename__ = "contacts"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    # Basic info
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True, index=True)
    phone = Column(String(50), nullable=True)

    # Professional info
    company = Column(String(255), nullable=True)
    position = Column(String(255), nullable=True)
    website = Column(String(500), nullable=True)

    # Free-text notes entered on the contact form
    notes = Column(Text, nullable=True)
    tags = Column(JSON, nullable=False, default=list)

    # Reference into card image storage
    card_image_url = Column(String(1000), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    user = relationship("User", back_populates="contacts")
    emails = relationship(
        "FollowUpEmail", back_populates="contact",
        cascade="all, delete-orphan",
    )
    synergy_note = relationship(
        "SynergyNote", back_populates="contact", uselist=False,
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index('ix_contacts_user_created', 'user_id', 'created_at'),
    )

    def __repr__(self):
        return f"<Contact {self.name} ({self.email})>"

    @property
    def has_email(self) -> bool:
        return bool((self.email or "").strip())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "company": self.company,
            "website": self.website,
            "position": self.position,
            "notes": self.notes or "",
            "tags": list(self.tags or []),
            "cardImageUrl": self.card_image_url,
            "createdAt": _isoformat(self.created_at),
        }


class SynergyNote(Base):
    """Cumulative conversation notes for a contact, fed into email generation."""
    __tablename__ = "synergy_notes"

    id = Column(String(36), primary_key=True, default=_new_id)
    contact_id = Column(
        String(36), ForeignKey("contacts.id", ondelete="CASCADE"),
        unique=True, nullable=False,
    )
    notes = Column(Text, nullable=False, default="")

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    contact = relationship("Contact", back_populates="synergy_note")

    def __repr__(self):
        return f"<SynergyNote contact={self.contact_id}>"


class FollowUpEmail(Base):
    """A follow-up email bound to exactly one contact."""
    __tablename__ = "follow_up_emails"

    id = Column(String(36), primary_key=True, default=_new_id)
    contact_id = Column(
        String(36), ForeignKey("contacts.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )

    subject = Column(String(500), nullable=False)
    body = Column(Text, nullable=False)

    # Status
    status = Column(SQLEnum(EmailStatus), nullable=False, default=EmailStatus.DRAFT)
    scheduled_date = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    # Set by a dispatch run that has taken ownership of this record
    claim_token = Column(String(36), nullable=True)
    claimed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    contact = relationship("Contact", back_populates="emails")

    __table_args__ = (
        Index('ix_follow_up_emails_due', 'status', 'scheduled_date'),
    )

    def __repr__(self):
        return f"<FollowUpEmail {self.id} ({self.status.value})>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "contactId": self.contact_id,
            "subject": self.subject,
            "body": self.body,
            "status": self.status.value if self.status else None,
            "scheduledDate": _isoformat(self.scheduled_date),
            "sentAt": _isoformat(self.sent_at),
            "error": self.error_message,
            "createdAt": _isoformat(self.created_at),
        }
