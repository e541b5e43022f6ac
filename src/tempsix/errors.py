"""Exceptions raised by the tempsix core.

Every error carries a stable ``code`` (reported to clients) and the HTTP
``status`` the API layer answers with.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for all relay errors."""

    code = "RELAY_ERROR"
    status = 500

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = str(self.args[0])


# --- Validation ---


class ValidationError(RelayError):
    """Malformed input."""

    code = "VALIDATION_ERROR"
    status = 400


class InvalidFormat(ValidationError):
    """Invalid ID format. Must be exactly 6 digits."""

    code = "INVALID_ID"


class InvalidId(ValidationError):
    """Both sender_id and recipient_id must be exactly 6 digits."""

    code = "INVALID_ID"


class SelfSend(ValidationError):
    """Cannot send message to yourself."""

    code = "INVALID_RECIPIENT"


class InvalidMessage(ValidationError):
    """Message is not valid."""

    code = "INVALID_MESSAGE"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class InvalidReason(ValidationError):
    """Unknown deletion reason."""

    code = "INVALID_REASON"


# --- Lookup ---


class NotFoundError(RelayError):
    """Referenced identity does not exist."""

    code = "NOT_FOUND"
    status = 404


class SenderNotFound(NotFoundError):
    """Sender not found."""

    code = "SENDER_NOT_FOUND"


class RecipientNotFound(NotFoundError):
    """Recipient not found."""

    code = "RECIPIENT_NOT_FOUND"


class UserNotFound(NotFoundError):
    """User not found."""

    code = "USER_NOT_FOUND"


# --- Conflicts and capacity ---


class ConflictError(RelayError):
    """Uniqueness violation."""

    code = "CONFLICT"
    status = 409


class AlreadyTaken(ConflictError):
    """ID already taken."""

    code = "ID_TAKEN"


class ResourceExhausted(RelayError):
    """Transient capacity problem, retry later."""

    code = "SERVICE_UNAVAILABLE"
    status = 503


class AllocationExhausted(ResourceExhausted):
    """Service temporarily unavailable. Please try again."""


# --- Storage ---


class StoreError(RelayError):
    """Storage operation failed."""

    code = "STORE_ERROR"
    status = 500
