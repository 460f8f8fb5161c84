"""Persisted chat data models.

Rooms and messages as they are stored by a ``RoomStore``. The message log of a
room is held by the store and accessed through its operations, so ``Room``
only carries the room's metadata, participants and ban list.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Set

from pydantic import BaseModel, Field


# Display name for messages stored without one
UNKNOWN_AUTHOR = "Unknown"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RoomTopic(str, Enum):
    """Topic category of a chat room."""
    POLITICS = "Politics"
    TRAVEL = "Travel"
    FITNESS = "Fitness"
    TECHNOLOGY = "Technology"
    GAMING = "Gaming"
    CULTURE = "Culture"
    OTHER = "Other"


class Room(BaseModel):
    """A chat room.

    Attributes:
        roomId: Unique room identifier (assigned by the store).
        creatorId: User ID of the room creator (always a participant).
        isPublic: Public rooms are readable and writable by everyone.
        participantIds: Users allowed into a private room.
        bannedUserIds: Users who may not write to the room.
    """
    roomId: str = Field(default_factory=lambda: uuid.uuid4().hex)
    title: str = ""
    description: str = ""
    topic: RoomTopic = RoomTopic.OTHER
    creatorId: str
    isPublic: bool = True
    participantIds: Set[str] = Field(default_factory=set)
    bannedUserIds: Set[str] = Field(default_factory=set)
    createdAt: datetime = Field(default_factory=utcnow)


class MessageDraft(BaseModel):
    """A validated message that has not been persisted yet.

    ``authorName`` is the display name the author had when sending; history
    pages show it without a user lookup.
    """
    authorId: str
    authorName: str = ""
    text: str
    isAiGenerated: bool = False
    isDeleted: bool = False
    createdAt: datetime = Field(default_factory=utcnow)


class Message(BaseModel):
    """A persisted message. ``messageId`` is assigned by the store on append."""
    messageId: str
    roomId: str
    authorId: str
    authorName: str = ""
    text: str
    isAiGenerated: bool = False
    isDeleted: bool = False
    createdAt: datetime

    @classmethod
    def from_draft(cls, room_id: str, message_id: str, draft: MessageDraft) -> "Message":
        return cls(messageId=message_id, roomId=room_id, **draft.model_dump())


class MessageAuthor(BaseModel):
    id: str
    displayName: str


class MessageView(BaseModel):
    """Canonical message representation, shared by live frames and history pages."""
    messageId: str
    roomId: str
    author: MessageAuthor
    text: str
    createdAt: datetime
    isAiGenerated: bool = False
    isDeleted: bool = False

    @classmethod
    def build(cls, message: Message) -> "MessageView":
        return cls(
            messageId=message.messageId,
            roomId=message.roomId,
            author=MessageAuthor(id=message.authorId, displayName=message.authorName or UNKNOWN_AUTHOR),
            text=message.text,
            createdAt=message.createdAt,
            isAiGenerated=message.isAiGenerated,
            isDeleted=message.isDeleted,
        )


class MessagePage(BaseModel):
    messages: List[MessageView]
    hasMore: bool = False
