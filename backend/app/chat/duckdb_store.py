"""DuckDB-backed room store.

Persists rooms and messages in an embedded DuckDB database so chat history
survives restarts.

Database Schema:
    rooms table:
        - id: Room identifier (primary key)
        - title, description, topic: Room metadata
        - creator_id: User ID of the room creator
        - is_public: Public rooms are open to everyone
        - participant_ids / banned_user_ids: JSON arrays of user IDs
        - created_at: Creation time (UTC)
    messages table:
        - id: Message identifier (primary key, assigned on append)
        - seq: Global insertion sequence, defines log order
        - room_id, author_id, author_name, text, is_ai, is_deleted
        - created_at: Append time (UTC)

Thread Safety:
    The DuckDB connection is NOT thread-safe. The store is meant to be used
    from the single event loop that serves the sockets.
"""
import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import duckdb

from .errors import StorageError, message_not_found, room_not_found
from .models import Message, MessageDraft, Room, RoomTopic, utcnow
from .store import ROOM_EDITABLE_FIELDS, RoomStore, new_room

logger = logging.getLogger(__name__)

_CREATE_SEQUENCE = "CREATE SEQUENCE IF NOT EXISTS messages_seq START 1"

_CREATE_ROOMS = """
CREATE TABLE IF NOT EXISTS rooms (
    id              VARCHAR PRIMARY KEY,
    title           VARCHAR NOT NULL DEFAULT '',
    description     VARCHAR NOT NULL DEFAULT '',
    topic           VARCHAR NOT NULL DEFAULT 'Other',
    creator_id      VARCHAR NOT NULL,
    is_public       BOOLEAN NOT NULL DEFAULT TRUE,
    participant_ids VARCHAR NOT NULL DEFAULT '[]',
    banned_user_ids VARCHAR NOT NULL DEFAULT '[]',
    created_at      TIMESTAMP NOT NULL
)
"""

_CREATE_MESSAGES = """
CREATE TABLE IF NOT EXISTS messages (
    id          VARCHAR PRIMARY KEY,
    seq         BIGINT DEFAULT nextval('messages_seq'),
    room_id     VARCHAR NOT NULL,
    author_id   VARCHAR NOT NULL,
    author_name VARCHAR NOT NULL DEFAULT '',
    text        VARCHAR NOT NULL,
    is_ai       BOOLEAN NOT NULL DEFAULT FALSE,
    is_deleted  BOOLEAN NOT NULL DEFAULT FALSE,
    created_at  TIMESTAMP NOT NULL
)
"""

_INDEX = "CREATE INDEX IF NOT EXISTS idx_messages_room ON messages(room_id, seq)"

_ROOM_COLUMNS = (
    "id, title, description, topic, creator_id, is_public, "
    "participant_ids, banned_user_ids, created_at"
)
_MESSAGE_COLUMNS = "id, room_id, author_id, author_name, text, is_ai, is_deleted, created_at"


def _to_db_time(value: datetime) -> datetime:
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db_time(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc)


class DuckDBRoomStore(RoomStore):
    """Room store persisting to a DuckDB file (or ``:memory:``)."""

    def __init__(self, db_path: str = "chat.duckdb") -> None:
        self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._locks: Dict[str, asyncio.Lock] = {}
        self._initialize_db()
        logger.info("[Store] DuckDB room store initialized with db=%s", self._db_path)

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create tables if they don't exist. Safe to call multiple times."""
        conn = self._get_connection()
        conn.execute(_CREATE_SEQUENCE)
        conn.execute(_CREATE_ROOMS)
        conn.execute(_CREATE_MESSAGES)
        conn.execute(_INDEX)

    def _lock(self, room_id: str) -> asyncio.Lock:
        if room_id not in self._locks:
            self._locks[room_id] = asyncio.Lock()
        return self._locks[room_id]

    def _execute(self, sql: str, params: Optional[list] = None) -> duckdb.DuckDBPyConnection:
        try:
            return self._get_connection().execute(sql, params or [])
        except duckdb.Error as e:
            logger.error(f"[Store] DuckDB query failed: {e}")
            raise StorageError("Failed to access chat storage") from e

    # -----------------------------------------------------------------------
    # Row mapping
    # -----------------------------------------------------------------------

    @staticmethod
    def _row_to_room(row: tuple) -> Room:
        return Room(
            roomId=row[0],
            title=row[1],
            description=row[2],
            topic=RoomTopic(row[3]),
            creatorId=row[4],
            isPublic=row[5],
            participantIds=set(json.loads(row[6])),
            bannedUserIds=set(json.loads(row[7])),
            createdAt=_from_db_time(row[8]),
        )

    @staticmethod
    def _row_to_message(row: tuple) -> Message:
        return Message(
            messageId=row[0],
            roomId=row[1],
            authorId=row[2],
            authorName=row[3],
            text=row[4],
            isAiGenerated=row[5],
            isDeleted=row[6],
            createdAt=_from_db_time(row[7]),
        )

    # -----------------------------------------------------------------------
    # Rooms
    # -----------------------------------------------------------------------

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
        self._execute(
            f"INSERT INTO rooms ({_ROOM_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                room.roomId,
                room.title,
                room.description,
                room.topic.value,
                room.creatorId,
                room.isPublic,
                json.dumps(sorted(room.participantIds)),
                json.dumps(sorted(room.bannedUserIds)),
                _to_db_time(room.createdAt),
            ],
        )
        logger.info(f"[Store] Created room {room.roomId} (public={is_public}) for {creator_id}")
        return room

    async def find_room(self, room_id: str) -> Optional[Room]:
        row = self._execute(
            f"SELECT {_ROOM_COLUMNS} FROM rooms WHERE id = ?", [room_id]
        ).fetchone()
        return self._row_to_room(row) if row else None

    def _newest_rooms(self, where: str = "") -> List[Room]:
        rows = self._execute(
            f"SELECT {_ROOM_COLUMNS} FROM rooms {where} ORDER BY created_at DESC, rowid DESC"
        ).fetchall()
        return [self._row_to_room(row) for row in rows]

    async def list_public_rooms(self) -> List[Room]:
        return self._newest_rooms("WHERE is_public")

    async def list_rooms_for_user(self, user_id: str) -> List[Room]:
        # Participants are stored as JSON text; filter after decoding.
        return [
            room
            for room in self._newest_rooms()
            if user_id == room.creatorId or user_id in room.participantIds
        ]

    async def update_room(self, room_id: str, changes: Dict[str, Any]) -> Room:
        async with self._lock(room_id):
            room = await self.find_room(room_id)
            if room is None:
                raise room_not_found(room_id)
            room = room.model_copy(
                update={field: changes[field] for field in ROOM_EDITABLE_FIELDS if field in changes}
            )
            self._execute(
                "UPDATE rooms SET title = ?, description = ?, topic = ?, is_public = ? WHERE id = ?",
                [room.title, room.description, RoomTopic(room.topic).value, room.isPublic, room_id],
            )
        return room

    async def delete_room(self, room_id: str) -> None:
        async with self._lock(room_id):
            if await self.find_room(room_id) is None:
                raise room_not_found(room_id)
            self._execute("DELETE FROM messages WHERE room_id = ?", [room_id])
            self._execute("DELETE FROM rooms WHERE id = ?", [room_id])
        self._locks.pop(room_id, None)
        logger.info(f"[Store] Deleted room {room_id}")

    async def ban_user(self, room_id: str, user_id: str) -> Room:
        async with self._lock(room_id):
            room = await self.find_room(room_id)
            if room is None:
                raise room_not_found(room_id)
            room.bannedUserIds.add(user_id)
            room.participantIds.discard(user_id)
            self._execute(
                "UPDATE rooms SET participant_ids = ?, banned_user_ids = ? WHERE id = ?",
                [
                    json.dumps(sorted(room.participantIds)),
                    json.dumps(sorted(room.bannedUserIds)),
                    room_id,
                ],
            )
        return room

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    async def find_message(self, room_id: str, message_id: str) -> Optional[Message]:
        row = self._execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ? AND room_id = ?",
            [message_id, room_id],
        ).fetchone()
        return self._row_to_message(row) if row else None

    async def append_message(self, room_id: str, draft: MessageDraft) -> Message:
        async with self._lock(room_id):
            if await self.find_room(room_id) is None:
                raise room_not_found(room_id)
            draft = draft.model_copy(update={"createdAt": utcnow()})
            message = Message.from_draft(room_id, uuid.uuid4().hex, draft)
            self._execute(
                f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    message.messageId,
                    room_id,
                    message.authorId,
                    message.authorName,
                    message.text,
                    message.isAiGenerated,
                    message.isDeleted,
                    _to_db_time(message.createdAt),
                ],
            )
        return message

    async def mark_deleted(self, room_id: str, message_id: str, redaction_text: str) -> Message:
        async with self._lock(room_id):
            if await self.find_room(room_id) is None:
                raise room_not_found(room_id)
            # The is_deleted guard keeps the first redaction; deletion is one-way.
            self._execute(
                "UPDATE messages SET is_deleted = TRUE, text = ? "
                "WHERE id = ? AND room_id = ? AND is_deleted = FALSE",
                [redaction_text, message_id, room_id],
            )
            message = await self.find_message(room_id, message_id)
        if message is None:
            raise message_not_found(message_id)
        return message

    async def list_messages(
        self,
        room_id: str,
        before_message_id: Optional[str] = None,
        limit: int = 20,
        include_deleted: bool = True,
    ) -> List[Message]:
        if await self.find_room(room_id) is None:
            raise room_not_found(room_id)

        conditions = ["room_id = ?"]
        params: list = [room_id]
        if before_message_id is not None:
            ref = self._execute(
                "SELECT seq FROM messages WHERE id = ? AND room_id = ?",
                [before_message_id, room_id],
            ).fetchone()
            if ref is None:
                raise message_not_found(before_message_id)
            conditions.append("seq < ?")
            params.append(ref[0])
        if not include_deleted:
            conditions.append("is_deleted = FALSE")

        rows = self._execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE {' AND '.join(conditions)} "
            "ORDER BY seq DESC LIMIT ?",
            params + [limit],
        ).fetchall()
        return [self._row_to_message(row) for row in rows]

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None
