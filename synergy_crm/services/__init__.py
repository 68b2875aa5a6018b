"""
Services layer for the Synergy CRM.
"""

from .contact_service import ContactService
from .email_service import FollowUpEmailService
from .generation_service import GenerationService
from .card_service import BusinessCardService

__all__ = ["ContactService", "FollowUpEmailService", "GenerationService", "BusinessCardService"]
