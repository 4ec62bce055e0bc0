"""Pydantic models and event names for the room relay protocol.

Every WebSocket frame is a JSON object with a ``type`` key naming one of the
events below plus flat payload fields. Inbound payloads are validated with the
``*Input`` models; outbound frames are built from :class:`ChatMessage` and
:class:`Session` and routed as :class:`Outbound` tuples.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, NamedTuple, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Event names
# =============================================================================


class ClientEvent(str, Enum):
    """Events sent by a client to the server."""
    USER_JOIN = "user_join"
    JOIN_ROOM = "join_room"
    LEAVE_ROOM = "leave_room"
    CREATE_ROOM = "create_room"
    SEND_MESSAGE = "send_message"
    TYPING = "typing"
    PRIVATE_MESSAGE = "private_message"
    MESSAGE_READ = "message_read"
    MESSAGE_REACTION = "message_reaction"


class ServerEvent(str, Enum):
    """Events pushed by the server to clients."""
    CONNECTED = "connected"
    ROOM_LIST = "room_list"
    USER_LIST = "user_list"
    USER_JOINED = "user_joined"
    USER_LEFT = "user_left"
    RECEIVE_MESSAGE = "receive_message"
    PRIVATE_MESSAGE = "private_message"
    MESSAGE_DELIVERED = "message_delivered"
    TYPING_USERS = "typing_users"
    MESSAGE_READ = "message_read"
    MESSAGE_REACTION = "message_reaction"


# =============================================================================
# State models
# =============================================================================


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Session(BaseModel):
    """Live binding of one connection to a username and a single room.

    Attributes:
        id: Connection id assigned by the server on connect.
        username: Display name announced by the client (not unique).
        room: The one room this connection currently belongs to.
    """
    id: str = Field(..., description="Connection id")
    username: str = Field(..., description="Display name")
    room: str = Field(..., description="Current room")


class ChatMessage(BaseModel):
    """A stored message, room-scoped or private.

    ``id`` is assigned by the message log from a monotonic counter; the
    timestamp is the server receipt time. ``reactions`` maps a reacting
    connection id to its single glyph.
    """
    id: int = Field(default=0, description="Monotonic message id")
    sender: str = Field(default="Anonymous", description="Sender username")
    senderId: str = Field(..., description="Sender connection id")
    room: str = Field(..., description="Room the message belongs to")
    text: str = Field(default="", description="Message text")
    attachment: Optional[Any] = Field(default=None, description="Opaque attachment payload")
    timestamp: datetime = Field(default_factory=_utcnow, description="Server receipt time (UTC)")
    isPrivate: bool = Field(default=False)
    recipientId: Optional[str] = None
    recipient: Optional[str] = None
    read: Optional[bool] = None
    reactions: Dict[str, str] = Field(default_factory=dict)
    clientId: Optional[str] = Field(default=None, description="Sender-side id of the optimistic copy")

    def to_wire(self) -> dict:
        """JSON-ready dict with unset optional fields omitted."""
        return self.model_dump(mode="json", exclude_none=True)


# =============================================================================
# Inbound payloads
# =============================================================================


class UserJoinInput(BaseModel):
    username: str
    room: Optional[str] = None


class JoinRoomInput(BaseModel):
    room: str


class LeaveRoomInput(BaseModel):
    room: str
    username: Optional[str] = None


class CreateRoomInput(BaseModel):
    name: str


class SendMessageInput(BaseModel):
    text: str = ""
    attachment: Optional[Any] = None
    clientId: Optional[str] = None


class TypingInput(BaseModel):
    isTyping: bool = True


class PrivateMessageInput(BaseModel):
    recipientId: str
    text: str = ""
    attachment: Optional[Any] = None


class MessageReadInput(BaseModel):
    senderId: str
    recipientId: str


class MessageReactionInput(BaseModel):
    messageId: int
    reaction: str
    # Ignored by the server: reactions are keyed by the acting connection.
    userId: Optional[str] = None


# =============================================================================
# Routing
# =============================================================================


class AddressMode(str, Enum):
    """How an outbound frame is addressed.

    Attributes:
        ROOM: Every connection whose session is in ``target`` room.
        CONNECTION: Exactly the connection ``target``.
        ALL: Every open connection (room directory only).
    """
    ROOM = "room"
    CONNECTION = "connection"
    ALL = "all"


class Outbound(NamedTuple):
    """One frame the dispatcher must deliver."""
    mode: AddressMode
    target: Optional[str]
    payload: dict


def to_room(room: str, event: ServerEvent, /, **fields: Any) -> Outbound:
    return Outbound(AddressMode.ROOM, room, {"type": event.value, **fields})


def to_connection(connection_id: str, event: ServerEvent, /, **fields: Any) -> Outbound:
    return Outbound(AddressMode.CONNECTION, connection_id, {"type": event.value, **fields})


def to_all(event: ServerEvent, /, **fields: Any) -> Outbound:
    return Outbound(AddressMode.ALL, None, {"type": event.value, **fields})
