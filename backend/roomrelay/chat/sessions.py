"""Session registry and room directory.

Room membership is never stored on its own: a room's members are whichever
sessions currently point at it.
"""
import logging
from typing import Dict, List, Optional, Tuple

from .schemas import Session

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Maps each live connection to its username and single active room."""

    def __init__(self) -> None:
        # connection id -> Session, in join order
        self._sessions: Dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._sessions

    def get(self, connection_id: str) -> Optional[Session]:
        return self._sessions.get(connection_id)

    def join(
        self, connection_id: str, username: str, room: str
    ) -> Tuple[Session, Optional[str]]:
        """Create or replace the session for a connection.

        Returns:
            Tuple of (session, previous_room). ``previous_room`` is the room
            the connection was in before, or None for a new session.
        """
        previous = self._sessions.get(connection_id)
        session = Session(id=connection_id, username=username, room=room)
        self._sessions[connection_id] = session
        return session, previous.room if previous else None

    def switch(self, connection_id: str, room: str) -> Optional[Tuple[Session, str]]:
        """Move a connection to another room.

        Returns:
            Tuple of (session, old_room), or None for an unknown connection.
        """
        session = self._sessions.get(connection_id)
        if session is None:
            return None
        old_room = session.room
        session.room = room
        return session, old_room

    def remove(self, connection_id: str) -> Optional[Session]:
        return self._sessions.pop(connection_id, None)

    def in_room(self, room: str) -> List[Session]:
        """Presence view of ``room``: every session whose room equals it."""
        return [s for s in self._sessions.values() if s.room == room]

    def connections_in(self, room: str) -> List[str]:
        return [s.id for s in self.in_room(room)]

    def all(self) -> List[Session]:
        return list(self._sessions.values())


class RoomDirectory:
    """Known room names. The default room always exists."""

    def __init__(self, default_room: str = "General") -> None:
        self.default_room = default_room
        self._rooms: List[str] = [default_room]

    def __contains__(self, name: str) -> bool:
        return name in self._rooms

    def add(self, name: str) -> bool:
        """Add a room; returns False if it already existed."""
        if name in self._rooms:
            return False
        self._rooms.append(name)
        logger.info(f"[Engine] Room created: {name}")
        return True

    def names(self) -> List[str]:
        return list(self._rooms)
