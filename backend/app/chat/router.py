"""Chat router providing the realtime WebSocket endpoint.

This module provides:
    - WebSocket /ws/chat: Authenticated realtime chat socket

The WebSocket protocol supports:
    - Bearer-token authentication at connect time (``token`` query parameter
      or ``Authorization: Bearer`` header)
    - Joining and leaving rooms
    - Sending messages with client-generated tempIds
    - Soft-deleting messages
    - Typing indicators

Protocol Message Types (client -> server):
    - joinChat: Join a room
    - leaveChat: Leave a room
    - sendMessage: Send a message
    - deleteMessage: Delete a message
    - typing: Typing indicator (start/stop)

See ``app.chat.events`` for the payloads.
"""
import asyncio
import json
import logging
from typing import Optional

import pydantic
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from .errors import AuthError, ChatError
from .events import (
    Connected,
    DeleteMessage,
    ErrorEvent,
    JoinChat,
    LeaveChat,
    MessageError,
    SendMessage,
    Typing,
    parse_client_event,
)
from .registry import Connection
from .runtime import ChatRuntime, get_runtime

logger = logging.getLogger(__name__)

router = APIRouter()

# 1008 = Policy Violation
AUTH_FAILED_CLOSE_CODE = 1008


def _extract_token(websocket: WebSocket, token: Optional[str]) -> Optional[str]:
    if token:
        return token
    header = websocket.headers.get("authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value:
        return value.strip()
    return None


async def handle_frame(runtime: ChatRuntime, connection: Connection, data: object) -> None:
    """Dispatch one client frame.

    Every error is converted into an event for the requesting connection;
    nothing raised here reaches other connections or ends the socket.
    """
    registry = runtime.registry

    if not isinstance(data, dict):
        registry.deliver(
            connection.connection_id,
            ErrorEvent(message="Frame must be a JSON object", reason="ValidationError"),
        )
        return

    try:
        event = parse_client_event(data)
    except pydantic.ValidationError:
        event_type = data.get("type")
        logger.debug(f"[WS] Malformed {event_type!r} frame from {connection.connection_id}")
        if event_type == "sendMessage":
            temp_id = data.get("tempId")
            registry.deliver(
                connection.connection_id,
                MessageError(
                    tempId=temp_id if isinstance(temp_id, str) else None,
                    error="ValidationError",
                    detail="Malformed sendMessage payload",
                ),
            )
        else:
            registry.deliver(
                connection.connection_id,
                ErrorEvent(message=f"Invalid or unknown event: {event_type}", reason="ValidationError"),
            )
        return

    try:
        if isinstance(event, SendMessage):
            await runtime.engine.send_message(connection, event)
        elif isinstance(event, JoinChat):
            await runtime.engine.join_chat(connection, event)
        elif isinstance(event, LeaveChat):
            runtime.engine.leave_chat(connection, event)
        elif isinstance(event, DeleteMessage):
            await runtime.engine.delete_message(connection, event)
        elif isinstance(event, Typing):
            runtime.typing.typing(connection, event)
    except ChatError as e:
        logger.info(f"[WS] {event.type} from {connection.identity.userId} failed: {e.reason} ({e.message})")
        registry.deliver(connection.connection_id, ErrorEvent(message=e.message, reason=e.reason))
    except Exception:
        logger.exception(f"[WS] Unexpected error handling {event.type} from {connection.connection_id}")
        registry.deliver(
            connection.connection_id,
            ErrorEvent(message="Internal server error", reason="InternalError"),
        )


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Bearer credential"),
) -> None:
    """WebSocket endpoint for realtime chat.

    Protocol Flow:
        1. Client connects with a bearer token
           → invalid/missing token: socket closed with 1008 before accept
           → Server sends: {type: "connected", userId, username}
        2. Client sends: {type: "joinChat", chatId}
           → Server sends: {type: "joinedChat", chatId, success} or {type: "error", ...}
        3. Client sends: {type: "sendMessage", chatId, text, tempId}
           → Server broadcasts: {type: "newMessage", chatId, message, tempId}
           → Server sends: {type: "messageSent", chatId, messageId, tempId, timestamp}
        4. Client sends: {type: "deleteMessage", chatId, messageId}
           → Server broadcasts: {type: "messageUpdate", chatId, messageId, update}
        5. Client sends: {type: "typing", chatId, isTyping}
           → Server sends to others: {type: "userTyping", userId, username, isTyping}
        6. On disconnect the connection leaves every room it joined.

    Args:
        websocket: The WebSocket connection.
        token: Bearer credential (falls back to the Authorization header).
    """
    runtime = get_runtime()
    registry = runtime.registry

    try:
        identity = await registry.authenticate(_extract_token(websocket, token))
    except AuthError as e:
        logger.warning(f"[WS] Rejecting connection: {e.message}")
        await websocket.close(code=AUTH_FAILED_CLOSE_CODE)
        return

    await websocket.accept()
    connection = Connection(
        websocket,
        identity,
        max_queue_size=runtime.config.chat.outbound_queue_size,
    )
    registry.register(connection)
    writer = asyncio.create_task(connection.run_writer())
    logger.info(
        f"[WS] Connection {connection.connection_id} accepted for "
        f"{identity.displayName} ({identity.userId})"
    )

    try:
        registry.deliver(
            connection.connection_id,
            Connected(userId=identity.userId, username=identity.displayName),
        )

        # Main message loop; frames are handled one at a time to keep
        # per-connection ordering.
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(frame.get("code", 1000))
            raw = frame.get("text")
            if raw is None:
                registry.deliver(
                    connection.connection_id,
                    ErrorEvent(message="Binary frames are not supported", reason="ValidationError"),
                )
                continue
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                registry.deliver(
                    connection.connection_id,
                    ErrorEvent(message="Invalid JSON", reason="ValidationError"),
                )
                continue
            logger.debug("[WS] %s received frame", connection.connection_id)
            await handle_frame(runtime, connection, data)

    except WebSocketDisconnect:
        logger.info(f"[WS] {identity.displayName} ({identity.userId}) disconnected")
    finally:
        registry.unregister(connection.connection_id)
        writer.cancel()
