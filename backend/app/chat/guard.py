"""Room authorization decisions.

Pure functions of (identity, room[, message]); no I/O and no state besides the
policy flag.

Rules:
    - read:   room is public OR identity is a participant.
              Banned users keep public read access unless
              ``banned_users_can_read`` is False.
    - write:  read rule AND identity is not banned (a ban overrides public
              write access).
    - delete: identity authored the message OR created the room.
"""
from enum import Enum

from app.auth.identity import Identity

from .models import Message, Room


class AccessIntent(str, Enum):
    READ = "read"
    WRITE = "write"


class RoomAuthorizationGuard:
    """Decides whether an identity may read, write or moderate a room."""

    def __init__(self, banned_users_can_read: bool = True) -> None:
        self.banned_users_can_read = banned_users_can_read

    def can_access(self, identity: Identity, room: Room, intent: AccessIntent) -> bool:
        user_id = identity.userId
        if not (room.isPublic or user_id in room.participantIds):
            return False

        is_banned = user_id in room.bannedUserIds
        if intent == AccessIntent.WRITE:
            return not is_banned
        return not is_banned or self.banned_users_can_read

    def can_delete(self, identity: Identity, room: Room, message: Message) -> bool:
        return identity.userId in (message.authorId, room.creatorId)

    def is_creator(self, identity: Identity, room: Room) -> bool:
        return identity.userId == room.creatorId
