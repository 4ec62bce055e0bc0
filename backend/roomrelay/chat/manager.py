"""WebSocket connection manager for the room relay.

This module binds live WebSocket connections to the :class:`ChatEngine` and
delivers the engine's outbound frames.

Key features:
    - Server-assigned connection ids (uuid4 hex)
    - One event processed at a time: mutate, derive views, resolve recipients, enqueue
    - One outbox queue and one writer task per socket
    - Automatic dead connection cleanup
    - Sends to connections that are gone are dropped, never queued

Thread Safety:
    Every event runs inside ``engine.lock``: the state change, the
    presence/typing snapshots, the recipient list and the enqueueing of each
    frame happen in one critical section with no ``await`` inside it. Each
    socket's writer then sends its frames in the order they were enqueued,
    so every client sees events in the order the engine processed them.
"""
import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

from fastapi import WebSocket

from .engine import ChatEngine
from .schemas import Outbound

logger = logging.getLogger(__name__)


class Outbox:
    """Ordered frame queue for one socket, drained by a single writer task.

    The queue belongs to the event loop that accepted the socket. Frames are
    handed over with ``call_soon_threadsafe`` so producers on any loop or
    thread keep their enqueue order.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self.loop = asyncio.get_running_loop()
        self.queue: "asyncio.Queue[dict]" = asyncio.Queue()
        self.writer: Optional[asyncio.Task] = None

    def put(self, payload: dict) -> bool:
        """Enqueue a frame; False when the owning loop is already closed."""
        try:
            self.loop.call_soon_threadsafe(self.queue.put_nowait, payload)
        except RuntimeError:
            return False
        return True

    def close(self) -> None:
        """Stop the writer; frames still queued are dropped."""
        if self.writer is None or self.writer.done():
            return
        try:
            self.loop.call_soon_threadsafe(self.writer.cancel)
        except RuntimeError:
            # Loop closed: the writer died with it
            pass


class ConnectionManager:
    """Owns the open WebSockets and pushes engine output to them.

    Note:
        This is a singleton-style global instance. The lifespan handler
        swaps in an engine built from configuration via :meth:`configure`.
    """

    def __init__(self, engine: Optional[ChatEngine] = None) -> None:
        self.engine = engine or ChatEngine()

        # connection id -> Outbox
        self.active_connections: Dict[str, Outbox] = {}

    def configure(self, engine: ChatEngine) -> None:
        """Replace the engine (drops all state held by the previous one)."""
        for outbox in self.active_connections.values():
            outbox.close()
        self.engine = engine
        self.active_connections.clear()

    def _dispatch(self, produce: Callable[[], List[Outbound]]) -> None:
        """Run ``produce`` and enqueue its frames for their recipients atomically."""
        with self.engine.lock:
            outbounds = produce()
            open_ids = list(self.active_connections)
            dead: List[str] = []
            for outbound in outbounds:
                targets = self.engine.recipients(outbound, open_ids)
                if not targets:
                    logger.debug(
                        f"[WS] No recipients for {outbound.payload.get('type')} -> {outbound.target}"
                    )
                    continue
                for cid in targets:
                    outbox = self.active_connections.get(cid)
                    if outbox is not None and not outbox.put(outbound.payload):
                        dead.append(cid)
            self._cleanup_connections(dead)

    async def connect(self, websocket: WebSocket) -> str:
        """Accept a WebSocket, assign its connection id and greet it.

        Returns:
            The backend-generated connection id.
        """
        await websocket.accept()
        connection_id = uuid.uuid4().hex
        outbox = Outbox(websocket)
        outbox.writer = asyncio.create_task(self._write(connection_id, outbox))

        def _register() -> List[Outbound]:
            self.active_connections[connection_id] = outbox
            return self.engine.connect(connection_id)

        self._dispatch(_register)
        logger.info(f"[WS] Connection {connection_id} accepted ({len(self.active_connections)} open)")
        return connection_id

    async def handle(self, connection_id: str, data: Any) -> None:
        """Run one inbound frame through the engine and queue the result."""
        self._dispatch(lambda: self.engine.handle(connection_id, data))

    async def disconnect(self, connection_id: str) -> None:
        """Forget a connection and refresh the views it was part of."""
        def _unregister() -> List[Outbound]:
            outbox = self.active_connections.pop(connection_id, None)
            if outbox is not None:
                outbox.close()
            return self.engine.disconnect(connection_id)

        self._dispatch(_unregister)
        logger.info(f"[WS] Connection {connection_id} closed ({len(self.active_connections)} open)")

    async def _write(self, connection_id: str, outbox: Outbox) -> None:
        """Send queued frames one at a time until the socket fails or is closed."""
        while True:
            payload = await outbox.queue.get()
            if not await self._safe_send(outbox.websocket, payload):
                self._cleanup_connections([connection_id])
                return

    async def _safe_send(self, connection: WebSocket, message: dict) -> bool:
        """Send a message to a WebSocket connection with error handling.

        Returns:
            True if successful, False if connection failed.
        """
        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False

    def _cleanup_connections(self, failed_connections: List[str]) -> None:
        if not failed_connections:
            return
        with self.engine.lock:
            for cid in failed_connections:
                outbox = self.active_connections.pop(cid, None)
                if outbox is not None:
                    outbox.close()
                    logger.debug(f"Removed dead connection {cid}")

    def get_connection_count(self) -> int:
        return len(self.active_connections)


# Global singleton instance used by all WebSocket handlers
manager = ConnectionManager()
