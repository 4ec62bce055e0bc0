"""Capacity-bounded, append-only message log shared by all rooms.

Messages are kept in insertion order, which is also id order: ids come from a
monotonic counter owned by the log, so two messages received in the same
clock tick still sort deterministically. Eviction is FIFO, either across the
whole log (``"global"``, the historical behaviour) or within the partition of
the incoming message (``"per_room"``), which keeps a quiet room's history from
being pushed out by a busy one.

Private messages live in the log so that read receipts can find them, but they
never appear in room pages or room search results.

The log does no locking of its own; :class:`roomrelay.chat.engine.ChatEngine`
serializes every call.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from .schemas import ChatMessage

logger = logging.getLogger(__name__)

# Eviction partition shared by every private message
PRIVATE_PARTITION = "@private"


class MessageLog:
    """Ordered store of every message across every room.

    Attributes:
        capacity: Maximum number of messages kept (per log, or per room when
            ``eviction == "per_room"``).
        eviction: ``"global"`` or ``"per_room"``.
    """

    def __init__(self, capacity: int = 100, eviction: str = "global") -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if eviction not in ("global", "per_room"):
            raise ValueError(f"Unknown eviction policy: {eviction}")
        self.capacity = capacity
        self.eviction = eviction
        self._messages: List[ChatMessage] = []
        self._by_id: Dict[int, ChatMessage] = {}
        self._next_id = 1

    def __len__(self) -> int:
        return len(self._messages)

    @staticmethod
    def _partition(message: ChatMessage) -> str:
        return PRIVATE_PARTITION if message.isPrivate else message.room

    def append(self, message: ChatMessage) -> ChatMessage:
        """Assign id and receipt time, store at the tail, evict if over capacity.

        Args:
            message: Message to store; its ``id`` and ``timestamp`` are replaced.

        Returns:
            The stored message (the instance later mutated by reactions/reads).
        """
        stored = message.model_copy(update={
            "id": self._next_id,
            "timestamp": datetime.now(timezone.utc),
        })
        self._next_id += 1
        self._messages.append(stored)
        self._by_id[stored.id] = stored
        self._evict(self._partition(stored))
        return stored

    def _evict(self, partition: str) -> None:
        if self.eviction == "global":
            while len(self._messages) > self.capacity:
                self._drop(0)
            return

        indexes = [
            i for i, msg in enumerate(self._messages)
            if self._partition(msg) == partition
        ]
        overflow = len(indexes) - self.capacity
        # Remove from the back so earlier indexes stay valid
        for i in reversed(indexes[:max(overflow, 0)]):
            self._drop(i)

    def _drop(self, index: int) -> None:
        evicted = self._messages.pop(index)
        self._by_id.pop(evicted.id, None)
        logger.debug(f"[Log] Evicted message {evicted.id} from room {evicted.room}")

    def get(self, message_id: int) -> Optional[ChatMessage]:
        return self._by_id.get(message_id)

    def room_messages(self, room: str) -> List[ChatMessage]:
        """Snapshot of the public messages in ``room``, oldest first."""
        return [m for m in self._messages if m.room == room and not m.isPrivate]

    def page(self, room: str, skip: int = 0, limit: int = 20) -> Tuple[List[ChatMessage], bool]:
        """Return the ``limit`` newest messages older than the ``skip`` newest.

        The page is computed against a snapshot taken at call time and is
        ordered oldest to newest.

        Args:
            room: Room to page through.
            skip: How many of the most recent messages the caller already has.
            limit: Maximum number of messages to return.

        Returns:
            Tuple of (messages, has_more) where ``has_more`` is True iff older
            messages remain before the returned page.
        """
        snapshot = self.room_messages(room)
        skip = max(skip, 0)
        limit = max(limit, 0)
        end = max(len(snapshot) - skip, 0)
        start = max(end - limit, 0)
        return snapshot[start:end], start > 0

    def search(self, room: str, query: str) -> List[ChatMessage]:
        """Case-insensitive substring match on text or sender name."""
        needle = (query or "").strip().lower()
        if not needle:
            return []
        return [
            m for m in self.room_messages(room)
            if needle in m.text.lower() or needle in m.sender.lower()
        ]

    def mutate(
        self, message_id: int, updater: Callable[[ChatMessage], None]
    ) -> Optional[ChatMessage]:
        """Apply ``updater`` in place to the message with ``message_id``.

        Returns:
            The updated message, or None if it is not (or no longer) stored.
        """
        message = self._by_id.get(message_id)
        if message is None:
            return None
        updater(message)
        return message

    def unread_private(self, sender_id: str, recipient_id: str) -> List[ChatMessage]:
        return [
            m for m in self._messages
            if m.isPrivate
            and m.senderId == sender_id
            and m.recipientId == recipient_id
            and not m.read
        ]

    def snapshot(self) -> List[ChatMessage]:
        return list(self._messages)
