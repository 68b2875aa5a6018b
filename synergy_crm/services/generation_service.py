"""
Follow-up email generation.

Merges newly supplied synergy notes onto the contact's note ledger,
asks the text generator for an email body and, only once that has
succeeded, saves the merged notes back.
"""

import logging
from typing import Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import NotFoundError
from ..llm import TextGenerator
from ..models import Contact, SynergyNote, User, utcnow
from ..prompts import FOLLOW_UP_SYSTEM_PROMPT, build_follow_up_prompt

logger = logging.getLogger(__name__)

NOTE_SEPARATOR = "\n\n"


def merge_notes(existing: Optional[str], new_notes: Optional[str]) -> str:
    """Append new notes after the existing ones, separated by a blank line."""
    existing = existing or ""
    new_notes = new_notes or ""
    if existing and new_notes:
        return f"{existing}{NOTE_SEPARATOR}{new_notes}"
    return existing or new_notes


class GenerationService:
    """Drafts follow-up emails from a contact and its synergy notes."""

    def __init__(self, db: Session, user: User, generator: Optional[TextGenerator] = None):
        self.db = db
        self.user = user
        self.generator = generator or TextGenerator()

    def _get_contact(self, contact_id: str) -> Contact:
        contact = self.db.query(Contact).filter(
            Contact.id == contact_id,
            Contact.user_id == self.user.id
        ).first()
        if not contact:
            raise NotFoundError(f"Contact {contact_id} not found")
        return contact

    def _get_ledger(self, contact_id: str) -> Optional[SynergyNote]:
        return self.db.query(SynergyNote).filter(SynergyNote.contact_id == contact_id).first()

    def get_notes(self, contact_id: str) -> str:
        """Accumulated synergy notes for a contact ("" when there are none)."""
        self._get_contact(contact_id)
        ledger = self._get_ledger(contact_id)
        return ledger.notes if ledger else ""

    def generate(self, contact_id: str, new_notes: Optional[str] = None) -> str:
        """
        Generate a follow-up email body for a contact.

        Args:
            contact_id: Contact to write to
            new_notes: Notes from the latest conversation, appended to the ledger

        Returns:
            The generated email text, verbatim.

        Raises:
            NotFoundError: the contact does not exist.
            GenerationError: the text generator failed; notes are not saved.
        """
        contact = self._get_contact(contact_id)
        ledger = self._get_ledger(contact_id)
        all_notes = merge_notes(ledger.notes if ledger else None, new_notes)

        prompt = build_follow_up_prompt(
            contact_name=contact.name,
            company=contact.company,
            position=contact.position,
            notes=all_notes,
            sender_name=self.user.full_name,
        )

        logger.info(f"Generating follow-up email for contact {contact_id}")
        email_text = self.generator.complete(FOLLOW_UP_SYSTEM_PROMPT, prompt)

        if new_notes:
            self._save_notes(contact_id, ledger, all_notes)

        return email_text

    def _save_notes(self, contact_id: str, ledger: Optional[SynergyNote], notes: str) -> None:
        """Upsert the ledger. Failures are logged and never raised."""
        try:
            if ledger is not None:
                ledger.notes = notes
                ledger.updated_at = utcnow()
            else:
                self.db.add(SynergyNote(contact_id=contact_id, notes=notes))
            self.db.flush()
        except SQLAlchemyError as e:
            # Only the note update is lost
            self.db.rollback()
            logger.error(f"Error saving synergy notes for contact {contact_id}: {e}")
