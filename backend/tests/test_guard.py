"""Tests for room read/write/delete authorization."""
import pytest

from app.chat.guard import AccessIntent, RoomAuthorizationGuard
from app.chat.models import Message, Room, utcnow


def _room(**overrides) -> Room:
    fields = dict(creatorId="alice", isPublic=True, participantIds={"alice"})
    fields.update(overrides)
    return Room(**fields)


def _message(author_id: str, room: Room) -> Message:
    return Message(messageId="m1", roomId=room.roomId, authorId=author_id, text="hi", createdAt=utcnow())


@pytest.fixture
def guard():
    return RoomAuthorizationGuard()


class TestCanAccess:
    @pytest.mark.parametrize("intent", [AccessIntent.READ, AccessIntent.WRITE])
    def test_public_room_open_to_anyone(self, guard, bob, intent):
        assert guard.can_access(bob, _room(), intent)

    @pytest.mark.parametrize("intent", [AccessIntent.READ, AccessIntent.WRITE])
    def test_private_room_requires_participation(self, guard, alice, bob, intent):
        room = _room(isPublic=False)
        assert guard.can_access(alice, room, intent)
        assert not guard.can_access(bob, room, intent)

    def test_ban_overrides_public_write(self, guard, bob):
        room = _room(bannedUserIds={"bob"})
        assert not guard.can_access(bob, room, AccessIntent.WRITE)

    def test_ban_overrides_participant_write(self, guard, bob):
        room = _room(isPublic=False, participantIds={"alice", "bob"}, bannedUserIds={"bob"})
        assert not guard.can_access(bob, room, AccessIntent.WRITE)

    def test_banned_user_keeps_public_read_by_default(self, guard, bob):
        room = _room(bannedUserIds={"bob"})
        assert guard.can_access(bob, room, AccessIntent.READ)

    def test_banned_read_can_be_revoked(self, bob):
        strict = RoomAuthorizationGuard(banned_users_can_read=False)
        room = _room(bannedUserIds={"bob"})
        assert not strict.can_access(bob, room, AccessIntent.READ)


class TestCanDelete:
    def test_author_may_delete(self, guard, bob):
        room = _room()
        assert guard.can_delete(bob, room, _message("bob", room))

    def test_creator_may_delete_any_message(self, guard, alice):
        room = _room()
        assert guard.can_delete(alice, room, _message("bob", room))

    def test_others_may_not_delete(self, guard, carol):
        room = _room()
        assert not guard.can_delete(carol, room, _message("bob", room))


def test_is_creator(guard, alice, bob):
    room = _room()
    assert guard.is_creator(alice, room)
    assert not guard.is_creator(bob, room)
