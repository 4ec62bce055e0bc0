"""Client-side view reconciliation.

A client sees messages from three sources: pages fetched over HTTP, frames
pushed over the event channel, and its own optimistic sends. The
:class:`ClientReconciler` folds them into one ordered, de-duplicated view of
the active room and keeps the presence, typing and notification state that the
UI renders next to it. It performs no I/O; :class:`roomrelay.client.RelayClient`
feeds it.

Rules worth knowing:
    - Server messages are identified by their integer ``id``; a page or a push
      carrying an id already in view is not added twice.
    - A pending send stays in view until a ``message_delivered`` frame with its
      ``clientId`` arrives. There is no timeout.
    - Presence entries are never removed, only flipped offline, and are keyed
      by connection id; usernames are display attributes.
    - A "joined" notice is shown once per (room, username) for the lifetime of
      the reconciler. "left" notices are never suppressed.
"""
import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


@dataclass
class PendingMessage:
    """An optimistic send awaiting its delivery acknowledgment."""
    client_id: str
    text: str
    sender: str
    room: str
    attachment: Optional[Any] = None
    status: str = "pending"
    created_at: float = field(default_factory=time.time)

    def to_message(self) -> dict:
        message = {
            "id": self.client_id,
            "clientId": self.client_id,
            "sender": self.sender,
            "room": self.room,
            "text": self.text,
            "timestamp": datetime.fromtimestamp(self.created_at, timezone.utc).isoformat(),
            "status": self.status,
        }
        if self.attachment is not None:
            message["attachment"] = self.attachment
        return message


@dataclass
class PresenceEntry:
    connection_id: str
    username: str
    online: bool = True


@dataclass
class Notification:
    """The single live cross-room message notification."""
    room: str
    sender: str
    text: str
    message_id: int


class ClientReconciler:
    """Merged, render-ready state for one client.

    Attributes:
        connection_id: Id assigned by the server for the current connection.
        username: Own display name.
        active_room: Room whose history is in ``paginated``.
        rooms: Room directory as last pushed by the server.
        joined_rooms: Rooms this client has entered (default room always first).
        paginated: Server-confirmed history of the active room plus system
            notices, oldest first.
        pending: Optimistic sends by client id, in send order.
        search_results: When not None, replaces the rendered view.
        has_more: Whether older history remains on the server.
        loading: Fetch-in-flight flag guarding page requests.
        presence: room -> connection id -> entry.
        typing_users: Usernames typing in the active room.
        private_messages: Private messages sent or received, in arrival order.
        notification: Latest qualifying message from another room, if any.
    """

    def __init__(
        self,
        username: Optional[str] = None,
        room: str = "General",
        default_room: str = "General",
    ) -> None:
        self.connection_id: Optional[str] = None
        self.username = username
        self.default_room = default_room
        self.active_room = room or default_room
        self.rooms: List[str] = [default_room]
        self.joined_rooms: List[str] = list(dict.fromkeys([default_room, self.active_room]))

        self.paginated: List[dict] = []
        self.pending: "OrderedDict[str, PendingMessage]" = OrderedDict()
        self.search_results: Optional[List[dict]] = None
        self.has_more = True
        self.loading = False

        self.presence: Dict[str, Dict[str, PresenceEntry]] = {}
        self.typing_users: List[str] = []
        self.private_messages: List[dict] = []
        self.notification: Optional[Notification] = None

        self._seen_joins: Set[Tuple[str, str]] = set()
        self._notice_seq = 0

        self._handlers: Dict[str, Callable[[dict], None]] = {
            "connected": self._on_connected,
            "room_list": self._on_room_list,
            "user_list": self._on_user_list,
            "user_joined": self._on_user_joined,
            "user_left": self._on_user_left,
            "receive_message": self._on_receive_message,
            "private_message": self._on_private_message,
            "message_delivered": self._on_message_delivered,
            "typing_users": self._on_typing_users,
            "message_read": self._on_message_read,
            "message_reaction": self._on_message_reaction,
        }

    # =========================================================================
    # Pushed events
    # =========================================================================

    def apply(self, event: dict) -> None:
        """Fold one server frame into the view. Unknown frames are ignored."""
        handler = self._handlers.get(event.get("type")) if isinstance(event, dict) else None
        if handler is None:
            logger.debug(f"[Client] Ignoring frame: {event!r}")
            return
        handler(event)
        self._refresh_notification()

    def _on_connected(self, event: dict) -> None:
        self.connection_id = event.get("id")

    def _on_room_list(self, event: dict) -> None:
        self.rooms = list(event.get("rooms") or [])

    def _on_user_list(self, event: dict) -> None:
        room = event.get("room") or self.active_room
        view = self.presence.setdefault(room, {})
        online = set()
        for user in event.get("users") or []:
            cid = user.get("id")
            if not cid:
                continue
            online.add(cid)
            view[cid] = PresenceEntry(cid, user.get("username", ""), online=True)
        for cid, entry in view.items():
            if cid not in online:
                entry.online = False

    def _notice(self, room: str, text: str) -> dict:
        self._notice_seq += 1
        return {
            "id": f"system-{self._notice_seq}",
            "system": True,
            "room": room,
            "text": text,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def _on_user_joined(self, event: dict) -> None:
        username = event.get("username", "")
        room = event.get("room") or self.default_room
        key = (room, username)
        if key in self._seen_joins:
            return
        self._seen_joins.add(key)
        if room == self.active_room:
            self.paginated.append(self._notice(room, f"{username} joined the room: {room}"))

    def _on_user_left(self, event: dict) -> None:
        room = event.get("room") or self.default_room
        if room == self.active_room:
            self.paginated.append(
                self._notice(room, f"{event.get('username', '')} left the room: {room}")
            )

    def _message_ids(self) -> Set[Any]:
        return {m.get("id") for m in self.paginated if not m.get("system")}

    def _on_receive_message(self, event: dict) -> None:
        message = {k: v for k, v in event.items() if k != "type"}
        if message.get("room") == self.active_room:
            if message.get("id") not in self._message_ids():
                self.paginated.append(message)
        self._consider_notification(message)

    def _on_private_message(self, event: dict) -> None:
        message = {k: v for k, v in event.items() if k != "type"}
        if all(m.get("id") != message.get("id") for m in self.private_messages):
            self.private_messages.append(message)

    def _on_message_delivered(self, event: dict) -> None:
        client_id = event.get("clientId")
        if client_id is not None and self.pending.pop(client_id, None) is not None:
            logger.debug(f"[Client] Pending {client_id} confirmed as message {event.get('id')}")

    def _on_typing_users(self, event: dict) -> None:
        if event.get("room", self.active_room) == self.active_room:
            self.typing_users = list(event.get("users") or [])

    def _on_message_read(self, event: dict) -> None:
        sender_id = event.get("senderId")
        recipient_id = event.get("recipientId")
        ids = set(event.get("messageIds") or [])
        for m in self.private_messages:
            if (m.get("senderId") == sender_id
                    and m.get("recipientId") == recipient_id
                    and m.get("id") in ids):
                m["read"] = True

    def _on_message_reaction(self, event: dict) -> None:
        message_id = event.get("messageId")
        reactions = dict(event.get("reactions") or {})
        for source in (self.paginated, self.private_messages, self.search_results or []):
            for m in source:
                if m.get("id") == message_id and not m.get("system"):
                    m["reactions"] = dict(reactions)

    # =========================================================================
    # Notifications
    # =========================================================================

    def _is_own(self, message: dict) -> bool:
        if self.connection_id is not None:
            return message.get("senderId") == self.connection_id
        return self.username is not None and message.get("sender") == self.username

    def _consider_notification(self, message: dict) -> None:
        if message.get("isPrivate") or message.get("system"):
            return
        room = message.get("room")
        if not room or room == self.active_room or self._is_own(message):
            return
        self.notification = Notification(
            room=room,
            sender=message.get("sender", ""),
            text=message.get("text", ""),
            message_id=message.get("id"),
        )

    def _refresh_notification(self) -> None:
        n = self.notification
        if n is None:
            return
        if n.room == self.active_room or n.message_id in self._message_ids():
            self.notification = None

    def dismiss_notification(self) -> None:
        self.notification = None

    # =========================================================================
    # Local actions
    # =========================================================================

    def queue_send(
        self,
        text: str,
        attachment: Any = None,
        client_id: Optional[str] = None,
    ) -> Optional[PendingMessage]:
        """Record an optimistic send. Empty text without attachment is rejected.

        Passing the ``client_id`` of an existing pending message re-queues it
        at the end instead of adding a duplicate.
        """
        if not (text or "").strip() and attachment is None:
            return None
        client_id = client_id or uuid.uuid4().hex
        self.pending.pop(client_id, None)
        pending = PendingMessage(
            client_id=client_id,
            text=(text or "").strip(),
            sender=self.username or "",
            room=self.active_room,
            attachment=attachment,
        )
        self.pending[client_id] = pending
        return pending

    def is_pending(self, message_id: Any) -> bool:
        return message_id in self.pending

    def switch_room(self, room: str) -> None:
        """Make ``room`` active; its history has to be fetched again."""
        if room == self.active_room:
            return
        self.active_room = room
        if room not in self.joined_rooms:
            self.joined_rooms.append(room)
        self.paginated = []
        self.has_more = True
        self.loading = False
        self.typing_users = []
        self.search_results = None
        self._refresh_notification()

    def leave_room(self, room: str) -> bool:
        """Forget a joined room. Returns False for the default room.

        Leaving the active room falls back to the default room.
        """
        if room == self.default_room:
            return False
        if room in self.joined_rooms:
            self.joined_rooms.remove(room)
        if room == self.active_room:
            self.switch_room(self.default_room)
        return True

    # =========================================================================
    # Pagination and search
    # =========================================================================

    def server_message_count(self) -> int:
        return sum(1 for m in self.paginated if not m.get("system"))

    def begin_fetch(self, older: bool = False) -> Optional[int]:
        """Claim the fetch slot.

        Returns:
            The ``skip`` to request, or None when a fetch is already in flight
            (or, for older pages, when nothing older remains).
        """
        if self.loading or (older and not self.has_more):
            return None
        self.loading = True
        return self.server_message_count() if older else 0

    def apply_page(self, room: str, messages: List[dict], has_more: bool, older: bool = False) -> None:
        """Merge a fetched page. Pages for a room no longer active are dropped."""
        self.loading = False
        if room != self.active_room:
            return
        self.has_more = has_more
        known = self._message_ids()

        if older:
            fresh = [m for m in messages if m.get("id") not in known]
            self.paginated = fresh + self.paginated
            return

        page_ids = {m.get("id") for m in messages}
        newest = max((m.get("id") for m in messages), default=0)
        # Pushes that raced ahead of the page, plus notices, stay after it
        carried = [
            m for m in self.paginated
            if m.get("system") or (m.get("id") not in page_ids and m.get("id", 0) > newest)
        ]
        self.paginated = list(messages) + carried

    def fail_fetch(self) -> None:
        self.loading = False

    def set_search_results(self, messages: List[dict]) -> None:
        self.search_results = list(messages)

    def clear_search(self) -> None:
        self.search_results = None

    # =========================================================================
    # Read side
    # =========================================================================

    def rendered(self) -> List[dict]:
        """What the chat pane shows for the active room."""
        if self.search_results is not None:
            return list(self.search_results)
        pending = [p.to_message() for p in self.pending.values() if p.room == self.active_room]
        return self.paginated + pending

    def roster(self, room: Optional[str] = None) -> Dict[str, bool]:
        """Username -> online for everyone ever seen in ``room``.

        A username is online if any of its connections is.
        """
        roster: Dict[str, bool] = {}
        for entry in self.presence.get(room or self.active_room, {}).values():
            roster[entry.username] = roster.get(entry.username, False) or entry.online
        return roster

    def online_users(self, room: Optional[str] = None) -> List[str]:
        return [name for name, online in self.roster(room).items() if online]

    def typing_others(self) -> List[str]:
        return [u for u in self.typing_users if u != self.username]

    def private_conversation(self, peer_id: str) -> List[dict]:
        me = self.connection_id
        return [
            m for m in self.private_messages
            if {m.get("senderId"), m.get("recipientId")} == {me, peer_id}
        ]
