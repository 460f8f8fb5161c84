"""Connection registry for the realtime chat socket.

This module owns every live socket connection, the identity bound to it and
its room memberships. It is the only component that mutates membership, and
it does so only in response to join/leave/disconnect events of the owning
connection.

Key features:
    - Authentication through an ``IdentityProvider`` before registration
    - Optional anonymous guest fallback (``allow_anonymous``)
    - Idempotent join/leave
    - Disconnect removes the connection from every room in one step
    - Fan-out via bounded per-connection outbound queues
    - Slow consumers are dropped instead of blocking the room

Thread Safety:
    This implementation is designed for async/await usage with a single event
    loop. Membership changes never await, so they are atomic with respect to
    other handlers. It is NOT thread-safe.
"""
import asyncio
import logging
import uuid
from typing import Dict, Optional, Set

from fastapi import WebSocket

from app.auth.identity import Identity, IdentityProvider

from .errors import AuthError
from .events import ServerEvent

logger = logging.getLogger(__name__)

# Default bound of each connection's outbound queue
DEFAULT_OUTBOUND_QUEUE_SIZE = 256

# Close code sent to consumers that cannot keep up (1013 = Try Again Later)
SLOW_CONSUMER_CLOSE_CODE = 1013


class Connection:
    """One live authenticated socket.

    Outbound events are queued and written by ``run_writer()`` so that fan-out
    never waits on a slow client.

    Attributes:
        connection_id: Opaque identifier, unique per live socket.
        identity: The identity resolved at connect time.
        joined_rooms: Rooms this connection currently receives fan-out for.
        outbox: Bounded queue of serialized outbound frames.
        close_task: Pending close started by ``abort()``, if any.
    """

    def __init__(
        self,
        websocket: Optional[WebSocket],
        identity: Identity,
        max_queue_size: int = DEFAULT_OUTBOUND_QUEUE_SIZE,
    ) -> None:
        self.connection_id = str(uuid.uuid4())
        self.websocket = websocket
        self.identity = identity
        self.joined_rooms: Set[str] = set()
        self.outbox: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self.closed = False
        self.overflowed = False
        self.close_task: Optional[asyncio.Task] = None

    def deliver(self, event: ServerEvent) -> bool:
        """Queue an event for this connection.

        Returns:
            True if queued. False if the connection is closed (the event is
            dropped) or its queue is full (``overflowed`` is set).
        """
        if self.closed:
            return False
        try:
            self.outbox.put_nowait(event.to_wire())
            return True
        except asyncio.QueueFull:
            self.overflowed = True
            return False

    async def run_writer(self) -> None:
        """Drain the outbox to the socket until cancelled or the socket fails."""
        while True:
            payload = await self.outbox.get()
            try:
                await self.websocket.send_json(payload)
            except Exception as e:
                logger.debug(f"[Registry] Failed to send to {self.connection_id}: {e}")
                self.closed = True
                return

    def abort(self, code: int = SLOW_CONSUMER_CLOSE_CODE) -> None:
        """Stop accepting events and close the socket in the background."""
        self.closed = True
        if self.websocket is not None and self.close_task is None:
            self.close_task = asyncio.create_task(self._safe_close(code))

    async def _safe_close(self, code: int) -> None:
        try:
            await self.websocket.close(code=code)
        except Exception as e:
            logger.debug(f"[Registry] Close of {self.connection_id} failed: {e}")


class ConnectionRegistry:
    """Tracks live connections and their room memberships.

    Note:
        A single registry instance is shared by all socket handlers of the
        process (see ``app.chat.runtime``).
    """

    def __init__(
        self,
        identity_provider: IdentityProvider,
        *,
        allow_anonymous: bool = False,
        guest_display_name: str = "Guest",
    ) -> None:
        self.identity_provider = identity_provider
        self.allow_anonymous = allow_anonymous
        self.guest_display_name = guest_display_name

        # connection_id -> Connection
        self.connections: Dict[str, Connection] = {}

        # room_id -> set of connection_ids currently joined
        self.room_members: Dict[str, Set[str]] = {}

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def authenticate(self, credential: Optional[str]) -> Identity:
        """Resolve a credential to an identity.

        Raises:
            AuthError: The credential is missing/invalid and anonymous guests
                are not allowed.
        """
        try:
            return await self.identity_provider.verify(credential)
        except AuthError as e:
            if not self.allow_anonymous:
                raise
            guest = Identity(
                userId=f"guest-{uuid.uuid4().hex[:12]}",
                displayName=self.guest_display_name,
                isAnonymous=True,
            )
            logger.info(f"[Registry] Credential rejected ({e.message}); admitting {guest.userId} as guest")
            return guest

    def register(self, connection: Connection) -> None:
        self.connections[connection.connection_id] = connection
        logger.info(
            f"[Registry] Registered {connection.connection_id} for user "
            f"{connection.identity.userId}. {len(self.connections)} live connections"
        )

    def unregister(self, connection_id: str) -> Optional[Connection]:
        """Remove a connection and all of its memberships.

        Safe to call more than once for the same connection.
        """
        connection = self.connections.pop(connection_id, None)
        if connection is None:
            return None

        for room_id in connection.joined_rooms:
            self._discard_member(room_id, connection_id)
        connection.joined_rooms.clear()
        connection.closed = True

        logger.info(f"[Registry] Unregistered {connection_id} (user {connection.identity.userId})")
        return connection

    def get(self, connection_id: str) -> Optional[Connection]:
        return self.connections.get(connection_id)

    # =========================================================================
    # Membership
    # =========================================================================

    def join(self, connection_id: str, room_id: str) -> None:
        """Add a connection to a room. Joining twice is a no-op."""
        connection = self.connections.get(connection_id)
        if connection is None:
            return
        self.room_members.setdefault(room_id, set()).add(connection_id)
        connection.joined_rooms.add(room_id)

    def leave(self, connection_id: str, room_id: str) -> None:
        """Remove a connection from a room. Leaving a non-joined room is a no-op."""
        self._discard_member(room_id, connection_id)
        connection = self.connections.get(connection_id)
        if connection is not None:
            connection.joined_rooms.discard(room_id)

    def members_of(self, room_id: str) -> Set[str]:
        return set(self.room_members.get(room_id, ()))

    def is_member(self, connection_id: str, room_id: str) -> bool:
        return connection_id in self.room_members.get(room_id, ())

    def _discard_member(self, room_id: str, connection_id: str) -> None:
        members = self.room_members.get(room_id)
        if not members:
            return
        members.discard(connection_id)
        if not members:
            # Drop empty rooms to avoid unbounded growth
            self.room_members.pop(room_id, None)

    # =========================================================================
    # Delivery
    # =========================================================================

    def deliver(self, connection_id: str, event: ServerEvent) -> bool:
        """Queue an event for one connection; drops it if the connection is gone."""
        connection = self.connections.get(connection_id)
        if connection is None:
            return False
        if connection.deliver(event):
            return True
        if connection.overflowed:
            self._drop_slow_consumer(connection)
        return False

    def broadcast(
        self,
        room_id: str,
        event: ServerEvent,
        exclude: Optional[str] = None,
    ) -> int:
        """Queue an event for every member of a room.

        Failure to reach one recipient never aborts delivery to the rest.

        Returns:
            Number of connections the event was queued for.
        """
        delivered = 0
        for connection_id in self.members_of(room_id):
            if connection_id == exclude:
                continue
            try:
                if self.deliver(connection_id, event):
                    delivered += 1
            except Exception:
                logger.exception(f"[Registry] Fan-out of {event.type} to {connection_id} failed")
        return delivered

    def _drop_slow_consumer(self, connection: Connection) -> None:
        logger.warning(
            f"[Registry] Outbound queue full for {connection.connection_id} "
            f"(user {connection.identity.userId}); disconnecting slow consumer"
        )
        self.unregister(connection.connection_id)
        connection.abort()
