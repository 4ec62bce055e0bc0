"""Per-room presence and typing views."""
from typing import Dict, List

from .sessions import SessionRegistry


def presence_view(registry: SessionRegistry, room: str) -> List[dict]:
    """Wire form of a room's presence, derived from the registry on every call."""
    return [s.model_dump() for s in registry.in_room(room)]


class TypingTracker:
    """Who is currently typing, per room.

    Entries are keyed by connection id so two sessions sharing a username do
    not clear each other.
    """

    def __init__(self) -> None:
        # room -> {connection id -> username}
        self._typing: Dict[str, Dict[str, str]] = {}

    def start(self, room: str, connection_id: str, username: str) -> bool:
        """Mark a connection as typing. Returns True if the view changed."""
        typing = self._typing.setdefault(room, {})
        if typing.get(connection_id) == username:
            return False
        typing[connection_id] = username
        return True

    def stop(self, room: str, connection_id: str) -> bool:
        """Clear a connection's typing flag. Returns True if the view changed."""
        typing = self._typing.get(room)
        if not typing or connection_id not in typing:
            return False
        del typing[connection_id]
        if not typing:
            del self._typing[room]
        return True

    def discard(self, connection_id: str) -> List[str]:
        """Clear a connection from every room; returns the rooms that changed."""
        changed = [room for room, typing in self._typing.items() if connection_id in typing]
        for room in changed:
            self.stop(room, connection_id)
        return changed

    def users(self, room: str) -> List[str]:
        # dict.fromkeys keeps first-typing order while collapsing shared names
        return list(dict.fromkeys(self._typing.get(room, {}).values()))
