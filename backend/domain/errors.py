"""Error taxonomy shared by repository, services and controllers."""

from __future__ import annotations


class AvailabilityError(Exception):
    """Base class for availability and assignment failures."""

    retriable = False


class AvailabilityValidationError(AvailabilityError, ValueError):
    """Raised for malformed input before any side effect happens."""


class NotFoundError(AvailabilityError):
    """Raised when a referenced mailbox, conversation or user does not exist."""


class MailboxNotFoundError(NotFoundError):
    pass


class ConversationNotFoundError(NotFoundError):
    pass


class PersistenceError(AvailabilityError):
    """Raised when a database read, write or transaction fails."""

    retriable = True


class ExternalCapabilityError(AvailabilityError):
    """Raised when the expertise classifier is unavailable or misbehaves."""
