"""Typing indicator relay.

Typing state is ephemeral: it is never persisted and never acknowledged.
Senders that have not joined the room are ignored silently, and the sender
never receives its own indicator.
"""
import logging

from .events import Typing, UserTyping
from .registry import Connection, ConnectionRegistry

logger = logging.getLogger(__name__)


class TypingRelay:
    """Fans typing events out to the other members of a room."""

    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry

    def typing(self, connection: Connection, request: Typing) -> int:
        """Relay a typing event.

        Returns:
            Number of connections the indicator was queued for.
        """
        if not self.registry.is_member(connection.connection_id, request.chatId):
            logger.debug(
                f"[Typing] Ignoring typing from {connection.connection_id}: "
                f"not joined to {request.chatId}"
            )
            return 0

        return self.registry.broadcast(
            request.chatId,
            UserTyping(
                userId=connection.identity.userId,
                username=connection.identity.displayName,
                isTyping=request.isTyping,
            ),
            exclude=connection.connection_id,
        )
