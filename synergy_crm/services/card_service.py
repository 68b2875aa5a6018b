"""
Business card capture.

Stores the card image, asks the vision model to read it, parses the
reply with the extraction parser and saves the result as a contact.
"""

import logging
from typing import Optional
from sqlalchemy.orm import Session

from ..errors import GenerationError
from ..extraction import ExtractedContact, parse_extraction
from ..llm import TextGenerator
from ..models import Contact, User
from ..prompts import CARD_EXTRACTION_SYSTEM_PROMPT, CARD_EXTRACTION_USER_PROMPT
from ..storage import CardImageStorage
from .contact_service import ContactService

logger = logging.getLogger(__name__)

# Contacts need a name; unreadable cards are saved under this one for review
UNKNOWN_CONTACT_NAME = "Unknown contact"


class BusinessCardService:
    """Turns a business card photo into a stored contact."""

    def __init__(
        self,
        db: Session,
        user: User,
        generator: Optional[TextGenerator] = None,
        storage: Optional[CardImageStorage] = None,
    ):
        self.db = db
        self.user = user
        self.generator = generator or TextGenerator()
        self.storage = storage or CardImageStorage()

    def extract(self, image_bytes: bytes, content_type: str = "image/jpeg") -> ExtractedContact:
        """Read a card image without storing anything."""
        reply = self.generator.describe_image(
            CARD_EXTRACTION_SYSTEM_PROMPT,
            CARD_EXTRACTION_USER_PROMPT,
            image_bytes,
            mime_type=content_type,
        )
        logger.info(f"Extracted content: {reply!r}")
        return parse_extraction(reply)

    def scan(
        self,
        image_bytes: bytes,
        content_type: str = "image/jpeg",
    ) -> tuple[Contact, ExtractedContact]:
        """
        Store a card image and create a contact from it.

        Returns:
            Tuple of (contact, extraction)
        """
        reference = self.storage.upload(self.user.id, image_bytes, content_type)

        try:
            extraction = self.extract(image_bytes, content_type)
        except GenerationError:
            self.storage.delete(reference)
            raise

        if extraction.is_empty:
            logger.warning("Nothing could be extracted from the card, saving an empty contact")

        fields = extraction.as_contact_fields()
        fields["name"] = fields["name"] or UNKNOWN_CONTACT_NAME

        contact = ContactService(self.db, self.user).create(
            card_image_url=reference,
            **fields,
        )
        return contact, extraction
