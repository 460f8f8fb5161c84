"""Chat rooms REST API router.

Endpoints:
    POST   /chats                            - Create a chat room
    GET    /chats/public                     - List public chat rooms
    GET    /chats/my-chats                   - List the caller's chat rooms
    GET    /chats/{chat_id}                  - Get a chat room
    PUT    /chats/{chat_id}                  - Edit a chat room (creator only)
    DELETE /chats/{chat_id}                  - Delete a chat room (creator only)
    GET    /chats/{chat_id}/messages         - Paginated message history
    POST   /chats/{chat_id}/bans/{user_id}   - Ban a user (creator only)

All endpoints require ``Authorization: Bearer <token>``.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from app.auth.identity import Identity

from .errors import AuthError, ChatError, ForbiddenError, NotFoundError, ValidationError, room_not_found
from .guard import AccessIntent
from .models import MessagePage, MessageView, Room, RoomTopic
from .runtime import get_runtime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chats", tags=["chats"])

_bearer = HTTPBearer(auto_error=False)

_STATUS_BY_ERROR = (
    (AuthError, 401),
    (ValidationError, 400),
    (ForbiddenError, 403),
    (NotFoundError, 404),
)


def _to_http(error: ChatError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=error.message)
    return HTTPException(status_code=500, detail=error.message)


async def current_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
) -> Identity:
    """Resolve the bearer token of a REST request; no anonymous fallback."""
    token = credentials.credentials if credentials else None
    try:
        return await get_runtime().identity_provider.verify(token)
    except AuthError as e:
        raise _to_http(e)


class CreateChatRequest(BaseModel):
    """Request model for creating a chat room."""
    title: str = Field(..., min_length=3, max_length=100)
    description: str = Field(..., min_length=10, max_length=1000)
    topic: RoomTopic = RoomTopic.OTHER
    isPublic: bool = True
    participantIds: List[str] = Field(default_factory=list)


class UpdateChatRequest(BaseModel):
    """Request model for editing a chat room. Omitted fields are left unchanged."""
    title: Optional[str] = Field(None, min_length=3, max_length=100)
    description: Optional[str] = Field(None, min_length=10, max_length=1000)
    topic: Optional[RoomTopic] = None
    isPublic: Optional[bool] = None


def _room_list(rooms: List[Room]) -> dict:
    return {"chats": [room.model_dump(mode="json") for room in rooms], "count": len(rooms)}


@router.post("", status_code=201)
async def create_chat(
    request: CreateChatRequest,
    identity: Identity = Depends(current_identity),
) -> dict:
    """Create a chat room; the caller becomes its creator and first participant."""
    room = await get_runtime().store.create_room(
        identity.userId,
        title=request.title.strip(),
        description=request.description.strip(),
        topic=request.topic,
        is_public=request.isPublic,
        participant_ids=request.participantIds,
    )
    return room.model_dump(mode="json")


@router.get("/public")
async def list_public_chats(identity: Identity = Depends(current_identity)) -> dict:
    """List every public chat room, newest first."""
    try:
        rooms = await get_runtime().store.list_public_rooms()
    except ChatError as e:
        raise _to_http(e)
    return _room_list(rooms)


@router.get("/my-chats")
async def list_my_chats(identity: Identity = Depends(current_identity)) -> dict:
    """List the rooms the caller created or participates in, newest first."""
    try:
        rooms = await get_runtime().store.list_rooms_for_user(identity.userId)
    except ChatError as e:
        raise _to_http(e)
    return _room_list(rooms)


@router.get("/{chat_id}")
async def get_chat(chat_id: str, identity: Identity = Depends(current_identity)) -> dict:
    """Get a single chat room. Private rooms are visible to participants only."""
    try:
        room = await _readable_room(chat_id, identity)
    except ChatError as e:
        raise _to_http(e)
    return room.model_dump(mode="json")


@router.put("/{chat_id}")
async def update_chat(
    chat_id: str,
    request: UpdateChatRequest,
    identity: Identity = Depends(current_identity),
) -> dict:
    """Edit a chat room's title, description, topic or visibility (creator only)."""
    changes = request.model_dump(exclude_none=True)
    for field in ("title", "description"):
        if field in changes:
            changes[field] = changes[field].strip()

    runtime = get_runtime()
    try:
        await _owned_room(chat_id, identity, "Only the creator can edit this chat")
        room = await runtime.store.update_room(chat_id, changes)
    except ChatError as e:
        raise _to_http(e)

    logger.info(f"[Rooms] Chat {chat_id} updated by {identity.userId}: {sorted(changes)}")
    return room.model_dump(mode="json")


@router.delete("/{chat_id}", status_code=204)
async def delete_chat(chat_id: str, identity: Identity = Depends(current_identity)) -> Response:
    """Delete a chat room and its message history (creator only).

    Sockets that joined the room keep their membership until they leave or
    disconnect; their next send fails with RoomNotFound.
    """
    runtime = get_runtime()
    try:
        await _owned_room(chat_id, identity, "Only the creator can delete this chat")
        await runtime.store.delete_room(chat_id)
    except ChatError as e:
        raise _to_http(e)

    logger.info(f"[Rooms] Chat {chat_id} deleted by {identity.userId}")
    return Response(status_code=204)


@router.get("/{chat_id}/messages")
async def get_messages(
    chat_id: str,
    beforeMessageId: Optional[str] = Query(None, description="Return messages older than this one"),
    limit: Optional[int] = Query(None, ge=1, description="Number of messages to return"),
    identity: Identity = Depends(current_identity),
) -> MessagePage:
    """Get a page of message history, newest first.

    Deleted messages are returned (redacted) to the room creator only; for
    everyone else they are skipped and do not count towards ``limit``.

    Example:
        GET /chats/abc123/messages?limit=20
        GET /chats/abc123/messages?beforeMessageId=6f1c...&limit=20
    """
    runtime = get_runtime()
    chat_settings = runtime.config.chat
    page_size = min(limit or chat_settings.history_page_size, chat_settings.max_history_page_size)

    try:
        room = await _readable_room(chat_id, identity)
        # Fetch one extra message to know whether an older page exists.
        messages = await runtime.store.list_messages(
            chat_id,
            beforeMessageId,
            page_size + 1,
            include_deleted=runtime.guard.is_creator(identity, room),
        )
    except ChatError as e:
        raise _to_http(e)

    return MessagePage(
        messages=[MessageView.build(message) for message in messages[:page_size]],
        hasMore=len(messages) > page_size,
    )


@router.post("/{chat_id}/bans/{user_id}")
async def ban_user(
    chat_id: str,
    user_id: str,
    identity: Identity = Depends(current_identity),
) -> dict:
    """Ban a user from writing to a chat and remove them from its participants.

    Live socket memberships of the banned user are not revoked; the ban takes
    effect on their next write.
    """
    runtime = get_runtime()
    try:
        room = await _owned_room(chat_id, identity, "Only the creator can ban users")
        if user_id == room.creatorId:
            raise ValidationError("The creator cannot be banned")
        room = await runtime.store.ban_user(chat_id, user_id)
    except ChatError as e:
        raise _to_http(e)

    logger.info(f"[Rooms] User {user_id} banned from chat {chat_id} by {identity.userId}")
    return room.model_dump(mode="json")


async def _readable_room(chat_id: str, identity: Identity) -> Room:
    runtime = get_runtime()
    room = await runtime.store.find_room(chat_id)
    if room is None:
        raise room_not_found(chat_id)
    if not runtime.guard.can_access(identity, room, AccessIntent.READ):
        raise ForbiddenError(f"No access to chat {chat_id}")
    return room


async def _owned_room(chat_id: str, identity: Identity, denied: str) -> Room:
    runtime = get_runtime()
    room = await runtime.store.find_room(chat_id)
    if room is None:
        raise room_not_found(chat_id)
    if not runtime.guard.is_creator(identity, room):
        raise ForbiddenError(denied)
    return room
