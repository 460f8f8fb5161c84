"""Socket protocol events.

Every frame on ``/ws/chat`` is a JSON object whose ``type`` field names the
event. Client frames are parsed into one of the ``ClientEvent`` variants;
server frames are built from the ``ServerEvent`` models and serialized with
``to_wire()``.

Client -> server:
    joinChat       {chatId}
    leaveChat      {chatId}
    sendMessage    {chatId, text, tempId}
    deleteMessage  {chatId, messageId}
    typing         {chatId, isTyping}

Server -> client:
    connected      {userId, username}                 requester
    joinedChat     {chatId, success}                  requester
    newMessage     {chatId, message, tempId}          all room members
    messageSent    {chatId, messageId, tempId, timestamp}  requester
    messageError   {tempId, error, detail}            requester
    messageUpdate  {chatId, messageId, update}        all room members
    userTyping     {userId, username, isTyping}       room members except sender
    error          {message, reason}                  requester
"""
from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from .models import MessageView

# =============================================================================
# Client events
# =============================================================================


class JoinChat(BaseModel):
    type: Literal["joinChat"]
    chatId: str = ""


class LeaveChat(BaseModel):
    type: Literal["leaveChat"]
    chatId: str = ""


class SendMessage(BaseModel):
    """Fields are optional here; the engine reports missing ones as messageError."""
    type: Literal["sendMessage"]
    chatId: Optional[str] = None
    text: Optional[str] = None
    tempId: Optional[str] = None


class DeleteMessage(BaseModel):
    type: Literal["deleteMessage"]
    chatId: str = ""
    messageId: str = ""


class Typing(BaseModel):
    type: Literal["typing"]
    chatId: str = ""
    isTyping: bool = True


ClientEvent = Annotated[
    Union[JoinChat, LeaveChat, SendMessage, DeleteMessage, Typing],
    Field(discriminator="type"),
]

_client_event_adapter = TypeAdapter(ClientEvent)


def parse_client_event(data: dict) -> ClientEvent:
    """Parse a raw client frame.

    Raises:
        pydantic.ValidationError: Unknown ``type`` or badly typed fields.
    """
    return _client_event_adapter.validate_python(data)


# =============================================================================
# Server events
# =============================================================================


class ServerEvent(BaseModel):
    type: str

    def to_wire(self) -> dict:
        return self.model_dump(mode="json")


class Connected(ServerEvent):
    type: Literal["connected"] = "connected"
    userId: str
    username: str


class JoinedChat(ServerEvent):
    type: Literal["joinedChat"] = "joinedChat"
    chatId: str
    success: bool = True


class NewMessage(ServerEvent):
    type: Literal["newMessage"] = "newMessage"
    chatId: str
    message: MessageView
    tempId: str


class MessageSent(ServerEvent):
    type: Literal["messageSent"] = "messageSent"
    chatId: str
    messageId: str
    tempId: str
    timestamp: datetime


class MessageError(ServerEvent):
    type: Literal["messageError"] = "messageError"
    tempId: Optional[str] = None
    error: str
    detail: str = ""


class MessageUpdate(ServerEvent):
    type: Literal["messageUpdate"] = "messageUpdate"
    chatId: str
    messageId: str
    update: dict


class UserTyping(ServerEvent):
    type: Literal["userTyping"] = "userTyping"
    userId: str
    username: str
    isTyping: bool


class ErrorEvent(ServerEvent):
    type: Literal["error"] = "error"
    message: str
    reason: str = "InternalError"
