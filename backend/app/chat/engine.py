"""Message broadcast engine: the send/delete/join protocol core.

Each send request walks the states

    Received -> Validated -> Persisted -> Broadcast -> Acknowledged

and leaves for ``Rejected`` from any state before Broadcast. A rejection is
reported to the originating connection only, as ``messageError`` carrying the
request's ``tempId``; nothing is persisted or broadcast.

On success the engine

    1. queues one ``newMessage`` (tagged with the original ``tempId``) for
       every connection currently joined to the room, the sender included;
    2. queues one ``messageSent`` acknowledgment for the sender only.

Both carry the same ``tempId`` and ``messageId`` so the sender can reconcile
its optimistic copy with whichever arrives first and ignore the other.

Fan-out happens only after the store confirmed the write, so no other
connection can observe a message that was not persisted.
"""
import logging
from typing import Optional

from .errors import (
    ChatError,
    ForbiddenError,
    StorageError,
    ValidationError,
    message_not_found,
    room_not_found,
)
from .events import (
    DeleteMessage,
    JoinChat,
    JoinedChat,
    LeaveChat,
    MessageError,
    MessageSent,
    MessageUpdate,
    NewMessage,
    SendMessage,
)
from .guard import AccessIntent, RoomAuthorizationGuard
from .models import MessageDraft, MessageView
from .registry import Connection, ConnectionRegistry
from .store import RoomStore

logger = logging.getLogger(__name__)

# Default upper bound on message text length (after trimming)
DEFAULT_MAX_MESSAGE_LENGTH = 2000

# Text stored in place of a soft-deleted message
DEFAULT_REDACTION_TEXT = "[Message deleted]"


class MessageBroadcastEngine:
    """Validates, persists and fans out client requests for a room."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        store: RoomStore,
        guard: RoomAuthorizationGuard,
        *,
        max_message_length: int = DEFAULT_MAX_MESSAGE_LENGTH,
        redaction_text: str = DEFAULT_REDACTION_TEXT,
    ) -> None:
        self.registry = registry
        self.store = store
        self.guard = guard
        self.max_message_length = max_message_length
        self.redaction_text = redaction_text

    # =========================================================================
    # Membership
    # =========================================================================

    async def join_chat(self, connection: Connection, request: JoinChat) -> None:
        """Join a room after a read-access check.

        Raises:
            ValidationError: ``chatId`` missing.
            NotFoundError: The room does not exist.
            ForbiddenError: The identity may not read the room.
        """
        room_id = request.chatId
        if not room_id:
            raise ValidationError("chatId is required")

        room = await self.store.find_room(room_id)
        if room is None:
            raise room_not_found(room_id)
        if not self.guard.can_access(connection.identity, room, AccessIntent.READ):
            raise ForbiddenError(f"No access to chat {room_id}")

        self.registry.join(connection.connection_id, room_id)
        self.registry.deliver(connection.connection_id, JoinedChat(chatId=room_id, success=True))
        logger.info(f"[Engine] User {connection.identity.userId} joined chat {room_id}")

    def leave_chat(self, connection: Connection, request: LeaveChat) -> None:
        if request.chatId:
            self.registry.leave(connection.connection_id, request.chatId)
            logger.info(f"[Engine] User {connection.identity.userId} left chat {request.chatId}")

    # =========================================================================
    # Send
    # =========================================================================

    async def send_message(self, connection: Connection, request: SendMessage) -> None:
        """Handle one send request end to end.

        Every outcome is delivered as an event; nothing is raised to the caller
        for classified errors.
        """
        identity = connection.identity
        try:
            text = self._validate(request)

            room = await self.store.find_room(request.chatId)
            if room is None:
                raise room_not_found(request.chatId)
            if not self.guard.can_access(identity, room, AccessIntent.WRITE):
                raise ForbiddenError(f"No write access to chat {request.chatId}")

            message = await self.store.append_message(
                request.chatId,
                MessageDraft(authorId=identity.userId, authorName=identity.displayName, text=text),
            )
        except ChatError as e:
            self._reject(connection, request.tempId, e)
            return
        except Exception as e:
            logger.exception(f"[Engine] Unexpected store failure for chat {request.chatId}")
            self._reject(connection, request.tempId, StorageError(f"Failed to save message: {e}"))
            return

        logger.info(
            f"[Engine] Persisted message {message.messageId} in chat {message.roomId} "
            f"from {identity.userId} (tempId={request.tempId})"
        )

        view = MessageView.build(message)
        delivered = self.registry.broadcast(
            message.roomId,
            NewMessage(chatId=message.roomId, message=view, tempId=request.tempId),
        )
        logger.debug(f"[Engine] newMessage {message.messageId} queued for {delivered} connections")

        self.registry.deliver(
            connection.connection_id,
            MessageSent(
                chatId=message.roomId,
                messageId=message.messageId,
                tempId=request.tempId,
                timestamp=message.createdAt,
            ),
        )

    def _validate(self, request: SendMessage) -> str:
        """Return the trimmed text or raise ValidationError."""
        missing = [
            name for name in ("chatId", "text", "tempId")
            if not (getattr(request, name) or "").strip()
        ]
        if missing:
            raise ValidationError(f"Missing fields: {', '.join(missing)}")

        text = request.text.strip()
        if len(text) > self.max_message_length:
            raise ValidationError(f"Message exceeds {self.max_message_length} characters")
        return text

    def _reject(self, connection: Connection, temp_id: Optional[str], error: ChatError) -> None:
        if isinstance(error, StorageError):
            logger.error(f"[Engine] Send from {connection.identity.userId} failed: {error.message}")
        else:
            logger.info(
                f"[Engine] Rejected send from {connection.identity.userId}: "
                f"{error.reason} ({error.message})"
            )
        self.registry.deliver(
            connection.connection_id,
            MessageError(tempId=temp_id, error=error.reason, detail=error.message),
        )

    # =========================================================================
    # Delete
    # =========================================================================

    async def delete_message(self, connection: Connection, request: DeleteMessage) -> None:
        """Soft-delete a message and tell every room member.

        Deleting an already-deleted message re-broadcasts the update without
        touching the stored message.

        Raises:
            ValidationError: ``chatId`` or ``messageId`` missing.
            NotFoundError: Room or message does not exist.
            ForbiddenError: Identity is neither the author nor the room creator.
            StorageError: The store failed.
        """
        if not request.chatId or not request.messageId:
            raise ValidationError("chatId and messageId are required")

        room = await self.store.find_room(request.chatId)
        if room is None:
            raise room_not_found(request.chatId)

        message = await self.store.find_message(request.chatId, request.messageId)
        if message is None:
            raise message_not_found(request.messageId)

        if not self.guard.can_delete(connection.identity, room, message):
            raise ForbiddenError("Only the author or the chat creator can delete this message")

        if not message.isDeleted:
            await self.store.mark_deleted(request.chatId, request.messageId, self.redaction_text)
            logger.info(
                f"[Engine] Message {request.messageId} in chat {request.chatId} "
                f"deleted by {connection.identity.userId}"
            )

        self.registry.broadcast(
            request.chatId,
            MessageUpdate(
                chatId=request.chatId,
                messageId=request.messageId,
                update={"isDeleted": True},
            ),
        )
