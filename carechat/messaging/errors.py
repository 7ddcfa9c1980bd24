"""
Chat error taxonomy.

Offline recipients are not an error: the message is stored and picked up
on the recipient's next history fetch.
"""

from __future__ import annotations


class ChatError(Exception):
    """Base class for every error raised by the messaging core."""


class TransportError(ChatError):
    """Connection-level failure: dropped socket or unusable frame."""


class FrameError(TransportError):
    """Raised when an inbound frame cannot be parsed."""


class PersistenceError(ChatError):
    """Raised when the message store cannot complete a write or read."""


class StoreConcurrencyError(PersistenceError):
    """Raised when optimistic locking keeps losing to another writer."""


class MessageNotFoundError(ChatError):
    pass


class AuthorizationError(ChatError):
    """Operation rejected for the requesting user."""

    def __init__(self, message: str, reason: str = "") -> None:
        super().__init__(message)
        self.reason = reason


class EligibilityError(AuthorizationError):
    """Sender and receiver are not allowed to chat."""


class DeleteNotAllowedError(AuthorizationError):
    """Soft delete refused: not the sender, window expired, or already deleted."""
