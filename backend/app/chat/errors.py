"""Error taxonomy for the realtime chat protocol.

Every error carries a ``reason`` code that is sent verbatim to the
requesting client (``messageError.error`` / ``error.reason``) and a
human-readable ``message``.
"""
from typing import Optional


class ChatError(Exception):
    """Base class for all errors raised while handling a client request."""

    reason: str = "InternalError"

    def __init__(self, message: str = "", reason: Optional[str] = None) -> None:
        super().__init__(message or self.reason)
        self.message = message or self.reason
        if reason is not None:
            self.reason = reason


class AuthError(ChatError):
    """Missing or invalid credential."""
    reason = "Unauthorized"


class ValidationError(ChatError):
    """Missing, empty or oversized request fields."""
    reason = "ValidationError"


class NotFoundError(ChatError):
    """Room or message does not exist."""
    reason = "NotFound"


class ForbiddenError(ChatError):
    """The identity is not allowed to perform the operation."""
    reason = "Forbidden"


class StorageError(ChatError):
    """The room store failed to persist or read state."""
    reason = "StorageError"


def room_not_found(room_id: str) -> NotFoundError:
    return NotFoundError(f"Chat {room_id} not found", reason="RoomNotFound")


def message_not_found(message_id: str) -> NotFoundError:
    return NotFoundError(f"Message {message_id} not found", reason="MessageNotFound")
