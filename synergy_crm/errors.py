"""
Error taxonomy for the CRM core.

Every error carries a human-readable message that is safe to show to
the user, plus the HTTP status the API layer answers with.
"""


class SynergyError(Exception):
    """Base class for all errors raised by the CRM core."""
    
    status_code = 500
    
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SynergyError):
    """Input has the wrong shape or a required field is missing."""
    status_code = 400


class NotFoundError(SynergyError):
    """A referenced contact or email does not exist."""
    status_code = 404


class InvalidReferenceError(SynergyError):
    """A foreign key target is missing at creation time."""
    status_code = 409


class GenerationError(SynergyError):
    """The text-generation call failed or returned unusable content."""
    status_code = 502


class TransportError(SynergyError):
    """Mail delivery failed."""
    status_code = 502


class StorageError(SynergyError):
    """A persistent store or object storage operation failed."""
    status_code = 500
