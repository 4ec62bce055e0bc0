"""Session, room and message coordination engine.

The engine owns the session registry, room directory, typing tracker and
message log, and exposes one method per inbound event. Each method mutates
state and returns the list of :class:`Outbound` frames the dispatcher has to
deliver; nothing here touches a socket, so routing can be tested without a
transport.

Room-addressed frames are resolved to connections by the caller after the
handler returns, while the engine lock is still held by the same event. Every
public method runs under one re-entrant lock, so an event's mutation, view
recomputation and fan-out never interleave with another event.

Unknown connections, sessions and message ids are silent no-ops: the handler
returns an empty list.
"""
import functools
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, Type

from pydantic import BaseModel, ValidationError

from .message_log import MessageLog
from .presence import TypingTracker, presence_view
from .schemas import (
    AddressMode,
    ChatMessage,
    ClientEvent,
    CreateRoomInput,
    JoinRoomInput,
    LeaveRoomInput,
    MessageReactionInput,
    MessageReadInput,
    Outbound,
    PrivateMessageInput,
    SendMessageInput,
    ServerEvent,
    Session,
    TypingInput,
    UserJoinInput,
    to_all,
    to_connection,
    to_room,
)
from .sessions import RoomDirectory, SessionRegistry

logger = logging.getLogger(__name__)


class MessageArchive(Protocol):
    """Optional sink that keeps a copy of stored messages and lists it back."""

    def record(self, message: ChatMessage) -> None: ...

    def update(self, message: ChatMessage) -> None: ...

    def get_messages(
        self, room: Optional[str] = None, limit: int = 100, include_private: bool = True
    ) -> List[dict]: ...

    def count(self) -> int: ...


def _serialized(method: Callable) -> Callable:
    @functools.wraps(method)
    def wrapper(self: "ChatEngine", *args: Any, **kwargs: Any) -> Any:
        with self.lock:
            return method(self, *args, **kwargs)
    return wrapper


class ChatEngine:
    """Single owner of all relay state.

    Attributes:
        log: The shared message log.
        sessions: Live connection -> session mapping.
        rooms: Known room names.
        typing: Per-room typing view.
        max_page_size: Upper bound applied to page requests.
    """

    def __init__(
        self,
        capacity: int = 100,
        eviction: str = "global",
        default_room: str = "General",
        max_page_size: int = 100,
        archive: Optional[MessageArchive] = None,
    ) -> None:
        self.log = MessageLog(capacity=capacity, eviction=eviction)
        self.sessions = SessionRegistry()
        self.rooms = RoomDirectory(default_room)
        self.typing = TypingTracker()
        self.max_page_size = max_page_size
        self.archive = archive
        self.lock = threading.RLock()

        self._handlers: Dict[ClientEvent, Tuple[Type[BaseModel], Callable]] = {
            ClientEvent.USER_JOIN: (UserJoinInput, self._on_user_join),
            ClientEvent.JOIN_ROOM: (JoinRoomInput, self._on_join_room),
            ClientEvent.LEAVE_ROOM: (LeaveRoomInput, self._on_leave_room),
            ClientEvent.CREATE_ROOM: (CreateRoomInput, self._on_create_room),
            ClientEvent.SEND_MESSAGE: (SendMessageInput, self._on_send_message),
            ClientEvent.TYPING: (TypingInput, self._on_typing),
            ClientEvent.PRIVATE_MESSAGE: (PrivateMessageInput, self._on_private_message),
            ClientEvent.MESSAGE_READ: (MessageReadInput, self._on_message_read),
            ClientEvent.MESSAGE_REACTION: (MessageReactionInput, self._on_message_reaction),
        }

    @property
    def default_room(self) -> str:
        return self.rooms.default_room

    # =========================================================================
    # Inbound dispatch
    # =========================================================================

    @_serialized
    def handle(self, connection_id: str, data: Any) -> List[Outbound]:
        """Validate one inbound frame and run its handler.

        Frames that are not objects, name an unknown event or fail payload
        validation are dropped.
        """
        if not isinstance(data, dict):
            logger.debug(f"[Engine] Ignoring non-object frame from {connection_id}")
            return []
        try:
            event = ClientEvent(data.get("type"))
        except ValueError:
            logger.debug(f"[Engine] Unknown event type from {connection_id}: {data.get('type')!r}")
            return []

        model, handler = self._handlers[event]
        try:
            payload = model.model_validate(data)
        except ValidationError as e:
            logger.debug(f"[Engine] Invalid {event.value} payload from {connection_id}: {e}")
            return []
        return handler(connection_id, payload)

    def _on_user_join(self, connection_id: str, p: UserJoinInput) -> List[Outbound]:
        return self.join(connection_id, p.username, p.room)

    def _on_join_room(self, connection_id: str, p: JoinRoomInput) -> List[Outbound]:
        return self.switch_room(connection_id, p.room)

    def _on_leave_room(self, connection_id: str, p: LeaveRoomInput) -> List[Outbound]:
        return self.leave_room(connection_id, p.room, p.username)

    def _on_create_room(self, connection_id: str, p: CreateRoomInput) -> List[Outbound]:
        return self.create_room(p.name)

    def _on_send_message(self, connection_id: str, p: SendMessageInput) -> List[Outbound]:
        return self.send_message(connection_id, p.text, p.attachment, p.clientId)

    def _on_typing(self, connection_id: str, p: TypingInput) -> List[Outbound]:
        return self.set_typing(connection_id, p.isTyping)

    def _on_private_message(self, connection_id: str, p: PrivateMessageInput) -> List[Outbound]:
        return self.private_message(connection_id, p.recipientId, p.text, p.attachment)

    def _on_message_read(self, connection_id: str, p: MessageReadInput) -> List[Outbound]:
        return self.mark_read(p.senderId, p.recipientId)

    def _on_message_reaction(self, connection_id: str, p: MessageReactionInput) -> List[Outbound]:
        return self.react(p.messageId, connection_id, p.reaction)

    # =========================================================================
    # Connections and sessions
    # =========================================================================

    @_serialized
    def connect(self, connection_id: str) -> List[Outbound]:
        """Frames owed to a freshly accepted connection."""
        return [
            to_connection(connection_id, ServerEvent.CONNECTED, id=connection_id),
            to_connection(connection_id, ServerEvent.ROOM_LIST, rooms=self.rooms.names()),
        ]

    def _user_list(self, room: str) -> Outbound:
        return to_room(room, ServerEvent.USER_LIST, room=room, users=presence_view(self.sessions, room))

    def _typing_users(self, room: str) -> Outbound:
        return to_room(room, ServerEvent.TYPING_USERS, room=room, users=self.typing.users(room))

    @_serialized
    def join(self, connection_id: str, username: str, room: Optional[str] = None) -> List[Outbound]:
        """Create or replace the connection's session and announce it."""
        username = (username or "").strip()
        if not username:
            logger.debug(f"[Engine] Ignoring join without username from {connection_id}")
            return []
        room = (room or "").strip() or self.default_room

        session, previous_room = self.sessions.join(connection_id, username, room)
        out: List[Outbound] = []
        if previous_room is not None and previous_room != room:
            if self.typing.stop(previous_room, connection_id):
                out.append(self._typing_users(previous_room))
            out.append(self._user_list(previous_room))
        out.append(self._user_list(room))
        out.append(to_room(room, ServerEvent.USER_JOINED, **session.model_dump()))
        logger.info(f"[Engine] {username} joined the room: {room}")
        return out

    @_serialized
    def switch_room(self, connection_id: str, room: str) -> List[Outbound]:
        """Move a session to ``room`` without announcing a join or leave.

        Presence is re-emitted for both the old and the new room.
        """
        room = (room or "").strip()
        if not room:
            return []
        moved = self.sessions.switch(connection_id, room)
        if moved is None:
            logger.debug(f"[Engine] switch_room from unknown connection {connection_id}")
            return []
        session, old_room = moved

        out: List[Outbound] = []
        if old_room != room:
            if self.typing.stop(old_room, connection_id):
                out.append(self._typing_users(old_room))
            out.append(self._user_list(old_room))
        out.append(self._user_list(room))
        logger.debug(f"[Engine] {session.username} switched {old_room} -> {room}")
        return out

    @_serialized
    def leave_room(
        self, connection_id: str, room: str, username: Optional[str] = None
    ) -> List[Outbound]:
        """Explicit leave: tell the room, and fall back to the default room.

        The default room can never be left.
        """
        session = self.sessions.get(connection_id)
        room = (room or "").strip()
        if session is None or not room or room == self.default_room:
            return []

        out: List[Outbound] = []
        if session.room == room:
            out.extend(self.switch_room(connection_id, self.default_room))
        out.append(to_room(
            room, ServerEvent.USER_LEFT,
            id=connection_id, username=session.username or username or "", room=room,
        ))
        logger.info(f"[Engine] {session.username} left the room: {room}")
        return out

    @_serialized
    def disconnect(self, connection_id: str) -> List[Outbound]:
        """Drop the session and refresh presence/typing for every known room."""
        session = self.sessions.remove(connection_id)
        typing_changed = self.typing.discard(connection_id)
        if session is None and not typing_changed:
            return []

        rooms = self.rooms.names()
        if session is not None:
            logger.info(f"[Engine] {session.username} disconnected")
            if session.room not in rooms:
                rooms.append(session.room)

        out = [self._user_list(r) for r in rooms]
        out.extend(self._typing_users(r) for r in rooms)
        return out

    @_serialized
    def create_room(self, name: str) -> List[Outbound]:
        name = (name or "").strip()
        if not name or not self.rooms.add(name):
            return []
        return [to_all(ServerEvent.ROOM_LIST, rooms=self.rooms.names())]

    @_serialized
    def set_typing(self, connection_id: str, is_typing: bool) -> List[Outbound]:
        session = self.sessions.get(connection_id)
        if session is None:
            return []
        if is_typing:
            self.typing.start(session.room, connection_id, session.username)
        else:
            self.typing.stop(session.room, connection_id)
        return [self._typing_users(session.room)]

    # =========================================================================
    # Messages
    # =========================================================================

    def _store(self, message: ChatMessage) -> ChatMessage:
        stored = self.log.append(message)
        if self.archive is not None:
            try:
                self.archive.record(stored)
            except Exception as e:
                logger.warning(f"[Engine] Archive failed for message {stored.id}: {e}")
        return stored

    def _archive_update(self, message: ChatMessage) -> None:
        if self.archive is None:
            return
        try:
            self.archive.update(message)
        except Exception as e:
            logger.warning(f"[Engine] Archive update failed for message {message.id}: {e}")

    @_serialized
    def send_message(
        self,
        connection_id: str,
        text: str,
        attachment: Any = None,
        client_id: Optional[str] = None,
    ) -> List[Outbound]:
        """Store a room message, broadcast it and acknowledge the sender.

        A connection that never announced itself sends as "Anonymous" into
        the default room.
        """
        if not (text or "").strip() and attachment is None:
            logger.debug(f"[Engine] Dropping empty message from {connection_id}")
            return []

        session = self.sessions.get(connection_id)
        room = session.room if session else self.default_room
        stored = self._store(ChatMessage(
            sender=session.username if session else "Anonymous",
            senderId=connection_id,
            room=room,
            text=text or "",
            attachment=attachment,
            clientId=client_id,
        ))

        out: List[Outbound] = []
        if self.typing.stop(room, connection_id):
            out.append(self._typing_users(room))
        out.append(to_room(room, ServerEvent.RECEIVE_MESSAGE, **stored.to_wire()))
        out.append(to_connection(
            connection_id, ServerEvent.MESSAGE_DELIVERED, id=stored.id, clientId=client_id,
        ))
        logger.debug(f"[Engine] Message {stored.id} stored for room {room}")
        return out

    @_serialized
    def private_message(
        self, connection_id: str, recipient_id: str, text: str, attachment: Any = None
    ) -> List[Outbound]:
        """Deliver to the recipient (if still connected) and echo to the sender."""
        if not (text or "").strip() and attachment is None:
            return []
        sender = self.sessions.get(connection_id)
        recipient = self.sessions.get(recipient_id)
        stored = self._store(ChatMessage(
            sender=sender.username if sender else "Anonymous",
            senderId=connection_id,
            room=sender.room if sender else self.default_room,
            text=text or "",
            attachment=attachment,
            isPrivate=True,
            recipientId=recipient_id,
            recipient=recipient.username if recipient else "",
        ))

        payload = stored.to_wire()
        out: List[Outbound] = []
        if recipient_id != connection_id:
            out.append(to_connection(recipient_id, ServerEvent.PRIVATE_MESSAGE, **payload))
        out.append(to_connection(connection_id, ServerEvent.PRIVATE_MESSAGE, **payload))
        return out

    @_serialized
    def react(self, message_id: int, user_id: str, glyph: str) -> List[Outbound]:
        """Set ``user_id``'s single reaction on a message and re-broadcast the map."""
        def _set(message: ChatMessage) -> None:
            message.reactions[user_id] = glyph

        message = self.log.mutate(message_id, _set)
        if message is None:
            logger.debug(f"[Engine] Reaction on unknown message {message_id}")
            return []
        self._archive_update(message)

        fields = {"messageId": message.id, "reactions": dict(message.reactions)}
        if message.isPrivate:
            targets = list(dict.fromkeys([message.senderId, message.recipientId or message.senderId]))
            return [to_connection(t, ServerEvent.MESSAGE_REACTION, **fields) for t in targets]
        return [to_room(message.room, ServerEvent.MESSAGE_REACTION, **fields)]

    @_serialized
    def mark_read(self, sender_id: str, recipient_id: str) -> List[Outbound]:
        """Flip unread private messages sender -> recipient and notify the sender once."""
        unread = self.log.unread_private(sender_id, recipient_id)
        if not unread:
            return []
        for message in unread:
            message.read = True
            self._archive_update(message)
        return [to_connection(
            sender_id, ServerEvent.MESSAGE_READ,
            senderId=sender_id, recipientId=recipient_id,
            messageIds=[m.id for m in unread],
        )]

    # =========================================================================
    # Read side (HTTP surface)
    # =========================================================================

    @_serialized
    def page(self, room: str, skip: int = 0, limit: int = 20) -> Tuple[List[dict], bool]:
        """Wire form of one history page, serialized while the log is locked."""
        limit = min(limit, self.max_page_size)
        messages, has_more = self.log.page(room, skip, limit)
        return [m.to_wire() for m in messages], has_more

    @_serialized
    def search(self, room: str, query: str) -> List[dict]:
        return [m.to_wire() for m in self.log.search(room, query)]

    @_serialized
    def archived_messages(self, room: Optional[str] = None, limit: int = 100) -> Optional[List[dict]]:
        """Public rows from the archive, newest first; None when no archive is attached."""
        if self.archive is None:
            return None
        return self.archive.get_messages(room=room, limit=limit, include_private=False)

    @_serialized
    def archived_count(self) -> Optional[int]:
        if self.archive is None:
            return None
        return self.archive.count()

    @_serialized
    def users(self) -> List[Session]:
        return self.sessions.all()

    @_serialized
    def room_names(self) -> List[str]:
        return self.rooms.names()

    @_serialized
    def recipients(self, outbound: Outbound, open_connections: List[str]) -> List[str]:
        """Resolve an outbound frame to connection ids against current state."""
        if outbound.mode == AddressMode.ROOM:
            return self.sessions.connections_in(outbound.target)
        if outbound.mode == AddressMode.CONNECTION:
            return [outbound.target] if outbound.target in open_connections else []
        return list(open_connections)
