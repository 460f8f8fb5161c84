"""Tests for the message broadcast engine (join, send, delete).

The engine is exercised directly against an in-memory store and a registry
of socket-less connections; every outbound frame is read back from the
connection's outbox.
"""
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from app.auth.identity import JWTIdentityProvider
from app.chat.engine import MessageBroadcastEngine
from app.chat.errors import ForbiddenError, NotFoundError, StorageError, ValidationError
from app.chat.events import DeleteMessage, JoinChat, LeaveChat, SendMessage
from app.chat.guard import RoomAuthorizationGuard
from app.chat.registry import Connection, ConnectionRegistry
from app.chat.store import InMemoryRoomStore


def _drain(connection: Connection) -> list:
    frames = []
    while not connection.outbox.empty():
        frames.append(connection.outbox.get_nowait())
    return frames


def _send(chat_id="room", text="hi", temp_id="t1") -> SendMessage:
    return SendMessage(type="sendMessage", chatId=chat_id, text=text, tempId=temp_id)


@pytest.fixture
def store():
    return InMemoryRoomStore()


@pytest.fixture
def registry():
    return ConnectionRegistry(JWTIdentityProvider(secret_key="unused"))


@pytest.fixture
def engine(registry, store):
    return MessageBroadcastEngine(registry, store, RoomAuthorizationGuard(), max_message_length=20)


@pytest.fixture
def connect(registry):
    def _connect(identity) -> Connection:
        connection = Connection(None, identity)
        registry.register(connection)
        return connection

    return _connect


@pytest_asyncio.fixture
async def public_room(store):
    return await store.create_room("alice", title="Lobby", description="Everyone welcome")


@pytest_asyncio.fixture
async def private_room(store):
    return await store.create_room(
        "alice", title="Secret", description="Invite only room", is_public=False, participant_ids=["bob"]
    )


class TestJoinChat:
    @pytest.mark.asyncio
    async def test_join_public_room(self, engine, registry, connect, carol, public_room):
        conn = connect(carol)

        await engine.join_chat(conn, JoinChat(type="joinChat", chatId=public_room.roomId))

        assert registry.is_member(conn.connection_id, public_room.roomId)
        assert _drain(conn) == [{"type": "joinedChat", "chatId": public_room.roomId, "success": True}]

    @pytest.mark.asyncio
    async def test_join_private_room_as_outsider(self, engine, registry, connect, carol, private_room):
        conn = connect(carol)

        with pytest.raises(ForbiddenError):
            await engine.join_chat(conn, JoinChat(type="joinChat", chatId=private_room.roomId))

        assert not registry.is_member(conn.connection_id, private_room.roomId)
        assert _drain(conn) == []

    @pytest.mark.asyncio
    async def test_join_unknown_room(self, engine, connect, carol):
        with pytest.raises(NotFoundError) as exc:
            await engine.join_chat(connect(carol), JoinChat(type="joinChat", chatId="nope"))
        assert exc.value.reason == "RoomNotFound"

    @pytest.mark.asyncio
    async def test_join_without_chat_id(self, engine, connect, carol):
        with pytest.raises(ValidationError):
            await engine.join_chat(connect(carol), JoinChat(type="joinChat"))

    @pytest.mark.asyncio
    async def test_leave_chat(self, engine, registry, connect, carol, public_room):
        conn = connect(carol)
        await engine.join_chat(conn, JoinChat(type="joinChat", chatId=public_room.roomId))

        engine.leave_chat(conn, LeaveChat(type="leaveChat", chatId=public_room.roomId))

        assert registry.members_of(public_room.roomId) == set()


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_broadcast_then_ack(self, engine, registry, connect, alice, bob, carol, public_room):
        room_id = public_room.roomId
        sender, member, outsider = connect(alice), connect(bob), connect(carol)
        for conn in (sender, member):
            registry.join(conn.connection_id, room_id)

        await engine.send_message(sender, _send(room_id, "  hi  ", "t1"))

        new_message, ack = _drain(sender)
        assert new_message["type"] == "newMessage"
        assert new_message["tempId"] == "t1"
        assert new_message["chatId"] == room_id
        assert new_message["message"]["text"] == "hi"
        assert new_message["message"]["author"] == {"id": "alice", "displayName": "Alice"}
        assert ack["type"] == "messageSent"
        assert ack["tempId"] == "t1"
        assert ack["messageId"] == new_message["message"]["messageId"]

        assert _drain(member) == [new_message]
        assert _drain(outsider) == []

    @pytest.mark.asyncio
    async def test_message_is_persisted(self, engine, store, registry, connect, alice, public_room):
        sender = connect(alice)
        registry.join(sender.connection_id, public_room.roomId)

        await engine.send_message(sender, _send(public_room.roomId))

        ack = _drain(sender)[-1]
        stored = await store.find_message(public_room.roomId, ack["messageId"])
        assert stored.authorId == "alice"
        assert stored.authorName == "Alice"
        assert stored.text == "hi"

    @pytest.mark.asyncio
    async def test_non_member_sender_gets_ack_only(self, engine, registry, connect, alice, bob, public_room):
        sender, member = connect(alice), connect(bob)
        registry.join(member.connection_id, public_room.roomId)

        await engine.send_message(sender, _send(public_room.roomId))

        assert [frame["type"] for frame in _drain(sender)] == ["messageSent"]
        assert [frame["type"] for frame in _drain(member)] == ["newMessage"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"chat_id": None},
            {"text": None},
            {"temp_id": None},
            {"text": "   "},
            {"chat_id": ""},
        ],
    )
    async def test_missing_fields_rejected_without_append(
        self, engine, store, registry, connect, alice, public_room, overrides
    ):
        sender = connect(alice)
        registry.join(sender.connection_id, public_room.roomId)
        store.append_message = AsyncMock()
        fields = {"chat_id": public_room.roomId, "text": "hi", "temp_id": "t1", **overrides}

        await engine.send_message(sender, _send(**fields))

        frames = _drain(sender)
        assert len(frames) == 1
        assert frames[0]["type"] == "messageError"
        assert frames[0]["error"] == "ValidationError"
        assert frames[0]["tempId"] == fields["temp_id"]
        store.append_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_oversized_text_rejected(self, engine, registry, connect, alice, bob, public_room):
        sender, member = connect(alice), connect(bob)
        registry.join(member.connection_id, public_room.roomId)

        await engine.send_message(sender, _send(public_room.roomId, "x" * 21))

        assert _drain(sender) == [
            {
                "type": "messageError",
                "tempId": "t1",
                "error": "ValidationError",
                "detail": "Message exceeds 20 characters",
            }
        ]
        assert _drain(member) == []

    @pytest.mark.asyncio
    async def test_private_room_outsider_forbidden(self, engine, registry, connect, bob, carol, private_room):
        sender, participant = connect(carol), connect(bob)
        registry.join(participant.connection_id, private_room.roomId)

        await engine.send_message(sender, _send(private_room.roomId))

        frames = _drain(sender)
        assert len(frames) == 1
        assert frames[0]["error"] == "Forbidden"
        assert frames[0]["tempId"] == "t1"
        assert _drain(participant) == []

    @pytest.mark.asyncio
    async def test_banned_user_cannot_write_public_room(self, engine, store, connect, bob, public_room):
        await store.ban_user(public_room.roomId, "bob")

        await engine.send_message(connect(bob), _send(public_room.roomId))
        # Banned users may still read public rooms by default.
        await engine.join_chat(connect(bob), JoinChat(type="joinChat", chatId=public_room.roomId))

        messages = await store.list_messages(public_room.roomId)
        assert messages == []

    @pytest.mark.asyncio
    async def test_unknown_room(self, engine, connect, alice):
        sender = connect(alice)

        await engine.send_message(sender, _send("missing"))

        frames = _drain(sender)
        assert frames[0]["type"] == "messageError"
        assert frames[0]["error"] == "RoomNotFound"

    @pytest.mark.asyncio
    async def test_store_failure_reported_and_not_broadcast(
        self, engine, store, registry, connect, alice, bob, public_room
    ):
        sender, member = connect(alice), connect(bob)
        registry.join(member.connection_id, public_room.roomId)
        store.append_message = AsyncMock(side_effect=StorageError("disk full"))

        await engine.send_message(sender, _send(public_room.roomId))

        frames = _drain(sender)
        assert len(frames) == 1
        assert frames[0]["error"] == "StorageError"
        assert frames[0]["tempId"] == "t1"
        assert _drain(member) == []

    @pytest.mark.asyncio
    async def test_unexpected_store_exception_becomes_storage_error(
        self, engine, store, connect, alice, public_room
    ):
        sender = connect(alice)
        store.append_message = AsyncMock(side_effect=RuntimeError("connection reset"))

        await engine.send_message(sender, _send(public_room.roomId))

        frames = _drain(sender)
        assert len(frames) == 1
        assert frames[0]["error"] == "StorageError"

    @pytest.mark.asyncio
    async def test_two_sends_keep_order(self, engine, registry, connect, alice, bob, public_room):
        sender, member = connect(alice), connect(bob)
        registry.join(member.connection_id, public_room.roomId)

        await engine.send_message(sender, _send(public_room.roomId, "one", "t1"))
        await engine.send_message(sender, _send(public_room.roomId, "two", "t2"))

        texts = [frame["message"]["text"] for frame in _drain(member)]
        assert texts == ["one", "two"]


class TestDeleteMessage:
    async def _post(self, engine, registry, connection, room_id, text="hi") -> str:
        registry.join(connection.connection_id, room_id)
        await engine.send_message(connection, _send(room_id, text))
        return _drain(connection)[-1]["messageId"]

    @pytest.mark.asyncio
    async def test_author_deletes(self, engine, store, registry, connect, bob, carol, public_room):
        author, watcher = connect(bob), connect(carol)
        registry.join(watcher.connection_id, public_room.roomId)
        message_id = await self._post(engine, registry, author, public_room.roomId)
        _drain(watcher)

        await engine.delete_message(
            author, DeleteMessage(type="deleteMessage", chatId=public_room.roomId, messageId=message_id)
        )

        expected = {
            "type": "messageUpdate",
            "chatId": public_room.roomId,
            "messageId": message_id,
            "update": {"isDeleted": True},
        }
        assert _drain(author) == [expected]
        assert _drain(watcher) == [expected]
        stored = await store.find_message(public_room.roomId, message_id)
        assert stored.isDeleted is True
        assert stored.text == "[Message deleted]"

    @pytest.mark.asyncio
    async def test_creator_deletes_others_message(self, engine, store, registry, connect, alice, bob, public_room):
        message_id = await self._post(engine, registry, connect(bob), public_room.roomId)

        await engine.delete_message(
            connect(alice), DeleteMessage(type="deleteMessage", chatId=public_room.roomId, messageId=message_id)
        )

        assert (await store.find_message(public_room.roomId, message_id)).isDeleted is True

    @pytest.mark.asyncio
    async def test_stranger_cannot_delete(self, engine, store, registry, connect, bob, carol, public_room):
        message_id = await self._post(engine, registry, connect(bob), public_room.roomId)

        with pytest.raises(ForbiddenError):
            await engine.delete_message(
                connect(carol), DeleteMessage(type="deleteMessage", chatId=public_room.roomId, messageId=message_id)
            )

        assert (await store.find_message(public_room.roomId, message_id)).isDeleted is False

    @pytest.mark.asyncio
    async def test_delete_is_monotonic(self, engine, store, registry, connect, bob, public_room):
        author = connect(bob)
        message_id = await self._post(engine, registry, author, public_room.roomId)
        request = DeleteMessage(type="deleteMessage", chatId=public_room.roomId, messageId=message_id)
        await engine.delete_message(author, request)
        store.mark_deleted = AsyncMock()

        await engine.delete_message(author, request)

        store.mark_deleted.assert_not_awaited()
        assert [frame["type"] for frame in _drain(author)] == ["messageUpdate", "messageUpdate"]
        assert (await store.find_message(public_room.roomId, message_id)).isDeleted is True

    @pytest.mark.asyncio
    async def test_unknown_message(self, engine, connect, alice, public_room):
        with pytest.raises(NotFoundError) as exc:
            await engine.delete_message(
                connect(alice), DeleteMessage(type="deleteMessage", chatId=public_room.roomId, messageId="nope")
            )
        assert exc.value.reason == "MessageNotFound"

    @pytest.mark.asyncio
    async def test_missing_ids(self, engine, connect, alice):
        with pytest.raises(ValidationError):
            await engine.delete_message(connect(alice), DeleteMessage(type="deleteMessage"))
