"""Room store contract and in-memory implementation.

The store is the sole mutator of persisted room/message state. Appends are
atomic per room: the store assigns ``messageId`` while holding the room's lock,
so two concurrent sends to the same room are appended one after the other and
their ``createdAt`` order matches the log order.

Messages are never removed one by one; ``mark_deleted`` only flips
``isDeleted`` and redacts the text, and never reverts it. Only
``delete_room`` drops a message log, together with its room.
"""
import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from .errors import message_not_found, room_not_found
from .models import Message, MessageDraft, Room, RoomTopic, utcnow

logger = logging.getLogger(__name__)

# Room fields the creator may change after creation
ROOM_EDITABLE_FIELDS = ("title", "description", "topic", "isPublic")


class RoomStore(ABC):
    """Persistence API for rooms and their ordered message logs."""

    @abstractmethod
    async def create_room(
        self,
        creator_id: str,
        *,
        title: str = "",
        description: str = "",
        topic: RoomTopic = RoomTopic.OTHER,
        is_public: bool = True,
        participant_ids: Iterable[str] = (),
    ) -> Room:
        """Create a room. The creator is always added as a participant."""

    @abstractmethod
    async def find_room(self, room_id: str) -> Optional[Room]:
        """Return the room, or None if it does not exist."""

    @abstractmethod
    async def list_public_rooms(self) -> List[Room]:
        """Return every public room, newest first."""

    @abstractmethod
    async def list_rooms_for_user(self, user_id: str) -> List[Room]:
        """Return the rooms ``user_id`` created or participates in, newest first."""

    @abstractmethod
    async def update_room(self, room_id: str, changes: Dict[str, Any]) -> Room:
        """Apply ``changes`` (keys from ``ROOM_EDITABLE_FIELDS``) to a room.

        Raises:
            NotFoundError: The room does not exist.
        """

    @abstractmethod
    async def delete_room(self, room_id: str) -> None:
        """Remove a room together with its message log.

        Raises:
            NotFoundError: The room does not exist.
        """

    @abstractmethod
    async def find_message(self, room_id: str, message_id: str) -> Optional[Message]:
        """Return a message of the room, or None if either does not exist."""

    @abstractmethod
    async def append_message(self, room_id: str, draft: MessageDraft) -> Message:
        """Append a message and assign its ``messageId``.

        Raises:
            NotFoundError: The room does not exist.
            StorageError: The write failed; nothing was appended.
        """

    @abstractmethod
    async def mark_deleted(self, room_id: str, message_id: str, redaction_text: str) -> Message:
        """Soft-delete a message in place. Already-deleted messages are returned unchanged.

        Raises:
            NotFoundError: The room or message does not exist.
            StorageError: The write failed.
        """

    @abstractmethod
    async def ban_user(self, room_id: str, user_id: str) -> Room:
        """Add ``user_id`` to the ban list and remove it from the participants."""

    @abstractmethod
    async def list_messages(
        self,
        room_id: str,
        before_message_id: Optional[str] = None,
        limit: int = 20,
        include_deleted: bool = True,
    ) -> List[Message]:
        """Return up to ``limit`` messages, newest first.

        With ``before_message_id`` only messages older than the reference
        message are returned. With ``include_deleted=False`` soft-deleted
        messages are skipped before the limit is applied.

        Raises:
            NotFoundError: The room or the reference message does not exist.
        """

    def close(self) -> None:
        """Release any resources held by the store."""


def new_room(
    creator_id: str,
    title: str,
    description: str,
    topic: RoomTopic,
    is_public: bool,
    participant_ids: Iterable[str],
) -> Room:
    participants = set(participant_ids)
    participants.add(creator_id)
    return Room(
        title=title,
        description=description,
        topic=topic,
        creatorId=creator_id,
        isPublic=is_public,
        participantIds=participants,
    )


class InMemoryRoomStore(RoomStore):
    """Process-local room store.

    Suitable for a single-process deployment and for tests; state is lost on
    restart.
    """

    def __init__(self) -> None:
        # room_id -> Room
        self.rooms: Dict[str, Room] = {}

        # room_id -> append-only message log
        self.messages: Dict[str, List[Message]] = {}

        # room_id -> lock serialising appends/updates to that room
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, room_id: str) -> asyncio.Lock:
        if room_id not in self._locks:
            self._locks[room_id] = asyncio.Lock()
        return self._locks[room_id]

    async def create_room(
        self,
        creator_id: str,
        *,
        title: str = "",
        description: str = "",
        topic: RoomTopic = RoomTopic.OTHER,
        is_public: bool = True,
        participant_ids: Iterable[str] = (),
    ) -> Room:
        room = new_room(creator_id, title, description, topic, is_public, participant_ids)
        self.rooms[room.roomId] = room
        self.messages[room.roomId] = []
        logger.info(f"[Store] Created room {room.roomId} (public={is_public}) for {creator_id}")
        return room.model_copy(deep=True)

    async def find_room(self, room_id: str) -> Optional[Room]:
        room = self.rooms.get(room_id)
        return room.model_copy(deep=True) if room else None

    def _newest_rooms(self) -> List[Room]:
        # Dict order is creation order.
        return list(reversed(list(self.rooms.values())))

    async def list_public_rooms(self) -> List[Room]:
        return [room.model_copy(deep=True) for room in self._newest_rooms() if room.isPublic]

    async def list_rooms_for_user(self, user_id: str) -> List[Room]:
        return [
            room.model_copy(deep=True)
            for room in self._newest_rooms()
            if user_id == room.creatorId or user_id in room.participantIds
        ]

    async def update_room(self, room_id: str, changes: Dict[str, Any]) -> Room:
        async with self._lock(room_id):
            room = self.rooms.get(room_id)
            if room is None:
                raise room_not_found(room_id)
            for field in ROOM_EDITABLE_FIELDS:
                if field in changes:
                    setattr(room, field, changes[field])
        return room.model_copy(deep=True)

    async def delete_room(self, room_id: str) -> None:
        async with self._lock(room_id):
            if self.rooms.pop(room_id, None) is None:
                raise room_not_found(room_id)
            self.messages.pop(room_id, None)
        self._locks.pop(room_id, None)
        logger.info(f"[Store] Deleted room {room_id}")

    async def find_message(self, room_id: str, message_id: str) -> Optional[Message]:
        for message in self.messages.get(room_id, []):
            if message.messageId == message_id:
                return message.model_copy()
        return None

    async def append_message(self, room_id: str, draft: MessageDraft) -> Message:
        async with self._lock(room_id):
            if room_id not in self.rooms:
                raise room_not_found(room_id)
            # Stamped under the lock so createdAt order matches log order.
            draft = draft.model_copy(update={"createdAt": utcnow()})
            message = Message.from_draft(room_id, uuid.uuid4().hex, draft)
            self.messages[room_id].append(message)
        return message.model_copy()

    async def mark_deleted(self, room_id: str, message_id: str, redaction_text: str) -> Message:
        async with self._lock(room_id):
            if room_id not in self.rooms:
                raise room_not_found(room_id)
            for message in self.messages[room_id]:
                if message.messageId == message_id:
                    if not message.isDeleted:
                        message.isDeleted = True
                        message.text = redaction_text
                    return message.model_copy()
        raise message_not_found(message_id)

    async def ban_user(self, room_id: str, user_id: str) -> Room:
        room = self.rooms.get(room_id)
        if room is None:
            raise room_not_found(room_id)
        room.bannedUserIds.add(user_id)
        room.participantIds.discard(user_id)
        return room.model_copy(deep=True)

    async def list_messages(
        self,
        room_id: str,
        before_message_id: Optional[str] = None,
        limit: int = 20,
        include_deleted: bool = True,
    ) -> List[Message]:
        if room_id not in self.rooms:
            raise room_not_found(room_id)

        log = self.messages[room_id]
        if before_message_id is not None:
            position = next(
                (i for i, msg in enumerate(log) if msg.messageId == before_message_id),
                None,
            )
            if position is None:
                raise message_not_found(before_message_id)
            log = log[:position]

        if not include_deleted:
            log = [msg for msg in log if not msg.isDeleted]

        newest_first = list(reversed(log))[:limit]
        return [msg.model_copy() for msg in newest_first]

