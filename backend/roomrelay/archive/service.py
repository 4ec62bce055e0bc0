"""DuckDB-based message archive.

The live :class:`~roomrelay.chat.message_log.MessageLog` is bounded and
in-memory; when the archive is enabled every stored message is also written
here, and reaction/read changes are written through. The archive is read
back only by `GET /archive/messages` and the `/health` row count; nothing is
loaded into the live log, so pagination and search keep their in-memory
semantics.

Database Schema:
    archived_messages table:
        - archive_id: Auto-incrementing primary key
        - run_id: Identifies the relay process that stored the message
        - message_id: Id assigned by the live log (restarts per process)
        - room, sender, sender_id, text
        - attachment: JSON text, NULL when absent
        - is_private, recipient_id, is_read
        - reactions: JSON text
        - timestamp: Server receipt time (UTC)

Thread Safety:
    Calls arrive from inside the engine lock, so the connection is never
    shared concurrently within one process.

Usage:
    archive = MessageArchiveService.get_instance(db_path="relay_archive.duckdb")
    engine = ChatEngine(archive=archive)
"""
import json
import logging
import uuid
from datetime import timezone
from typing import List, Optional

import duckdb

from roomrelay.chat.schemas import ChatMessage

logger = logging.getLogger(__name__)


class MessageArchiveService:
    """Singleton service writing relay messages to DuckDB.

    Attributes:
        _instance: Singleton instance of the service.
        _db_path: Path to the DuckDB database file.
        run_id: Random id separating this process's message ids from earlier runs.
    """

    _instance: Optional["MessageArchiveService"] = None
    _db_path: str = "relay_archive.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Initialize the archive, creating schema if needed.

        Args:
            db_path: Path to DuckDB file (":memory:" for tests).
        """
        if db_path:
            self._db_path = db_path
        self.run_id = uuid.uuid4().hex
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()
        logger.info(f"[Archive] Initialized with db={self._db_path}")

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "MessageArchiveService":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close and forget the singleton (used by tests and shutdown)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        conn = self._get_connection()
        conn.execute("""
            CREATE SEQUENCE IF NOT EXISTS archived_messages_seq START 1;
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS archived_messages (
                archive_id BIGINT DEFAULT nextval('archived_messages_seq') PRIMARY KEY,
                run_id VARCHAR NOT NULL,
                message_id BIGINT NOT NULL,
                room VARCHAR NOT NULL,
                sender VARCHAR NOT NULL,
                sender_id VARCHAR NOT NULL,
                text VARCHAR NOT NULL,
                attachment VARCHAR,
                is_private BOOLEAN NOT NULL,
                recipient_id VARCHAR,
                is_read BOOLEAN,
                reactions VARCHAR NOT NULL,
                timestamp TIMESTAMP NOT NULL
            )
        """)

    def record(self, message: ChatMessage) -> None:
        """Insert a newly stored message."""
        attachment = None if message.attachment is None else json.dumps(message.attachment)
        self._get_connection().execute(
            """
            INSERT INTO archived_messages
              (run_id, message_id, room, sender, sender_id, text, attachment,
               is_private, recipient_id, is_read, reactions, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                self.run_id,
                message.id,
                message.room,
                message.sender,
                message.senderId,
                message.text,
                attachment,
                message.isPrivate,
                message.recipientId,
                message.read,
                json.dumps(message.reactions),
                message.timestamp.replace(tzinfo=None),
            ]
        )

    def update(self, message: ChatMessage) -> None:
        """Write through the mutable fields (reactions, read flag)."""
        self._get_connection().execute(
            """
            UPDATE archived_messages
            SET reactions = ?, is_read = ?
            WHERE run_id = ? AND message_id = ?
            """,
            [json.dumps(message.reactions), message.read, self.run_id, message.id]
        )

    def get_messages(
        self, room: Optional[str] = None, limit: int = 100, include_private: bool = True
    ) -> List[dict]:
        """Archived messages, newest first.

        Args:
            room: Optional room filter (private messages are never returned).
            limit: Maximum number of rows.
            include_private: Whether an unfiltered listing keeps private messages.
        """
        conn = self._get_connection()
        columns = (
            "message_id, room, sender, sender_id, text, attachment, "
            "is_private, recipient_id, is_read, reactions, timestamp"
        )
        if room:
            rows = conn.execute(
                f"""
                SELECT {columns} FROM archived_messages
                WHERE room = ? AND NOT is_private
                ORDER BY archive_id DESC
                LIMIT ?
                """,
                [room, limit]
            ).fetchall()
        else:
            where = "" if include_private else "WHERE NOT is_private"
            rows = conn.execute(
                f"""
                SELECT {columns} FROM archived_messages
                {where}
                ORDER BY archive_id DESC
                LIMIT ?
                """,
                [limit]
            ).fetchall()

        return [
            {
                "id": row[0],
                "room": row[1],
                "sender": row[2],
                "senderId": row[3],
                "text": row[4],
                "attachment": json.loads(row[5]) if row[5] is not None else None,
                "isPrivate": row[6],
                "recipientId": row[7],
                "read": row[8],
                "reactions": json.loads(row[9]),
                "timestamp": row[10].replace(tzinfo=timezone.utc).isoformat(),
            }
            for row in rows
        ]

    def count(self) -> int:
        return self._get_connection().execute(
            "SELECT COUNT(*) FROM archived_messages"
        ).fetchone()[0]

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None
