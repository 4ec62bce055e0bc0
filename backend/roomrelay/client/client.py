"""Async relay client.

Drives a :class:`ClientReconciler` and a :class:`ConnectionStateMachine` over
the relay's WebSocket event channel (``websockets``) and its HTTP history
endpoints (``httpx``).

Usage:
    client = RelayClient("http://localhost:5000")
    await client.connect("alice", room="General")
    await client.send_message("hi")
    client.view.rendered()
"""
import asyncio
import json
import logging
from typing import Any, Callable, Optional

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from roomrelay.config import ClientSettings

from .reconciler import ClientReconciler, PendingMessage
from .state import ConnectionState, ConnectionStateMachine

logger = logging.getLogger(__name__)


class RelayClient:
    """One user's connection to a relay server.

    Attributes:
        view: The reconciled client state.
        connection: Connection state machine.
        username: Identity announced on every (re)connect.
        room: Last known room, announced together with the username.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:5000",
        *,
        settings: Optional[ClientSettings] = None,
        default_room: str = "General",
        http_client: Optional[httpx.AsyncClient] = None,
        ws_connect: Callable[..., Any] = websockets.connect,
        on_event: Optional[Callable[[dict], None]] = None,
    ) -> None:
        settings = settings or ClientSettings()
        self.base_url = base_url.rstrip("/")
        self.ws_url = self.base_url.replace("http://", "ws://", 1).replace("https://", "wss://", 1) + "/ws"
        self.page_size = settings.page_size
        self.default_room = default_room

        self.view = ClientReconciler(room=default_room, default_room=default_room)
        self.connection = ConnectionStateMachine(
            max_attempts=settings.reconnect_attempts,
            base_delay=settings.reconnect_delay,
            max_delay=settings.reconnect_delay_max,
        )
        self.username: Optional[str] = None
        self.room = default_room

        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(base_url=self.base_url)
        self._ws_connect = ws_connect
        self._on_event = on_event
        self._ws: Any = None
        self._announced = False
        self._task: Optional[asyncio.Task] = None
        self._ready = asyncio.Event()

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def connect(self, username: str, room: Optional[str] = None, wait: bool = True) -> None:
        """Start (or restart) the connection loop with a full retry budget.

        Args:
            username: Identity to announce.
            room: Room to announce (defaults to the last known room).
            wait: Block until the first announcement or until the budget runs out.
        """
        self.username = username
        self.view.username = username
        if room:
            self.room = room
            self.view.switch_room(room)

        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._ready.clear()
        self.connection.request_connect()
        self._task = asyncio.create_task(self._run())
        if wait:
            await self._wait_ready_or_stopped()

    async def _wait_ready_or_stopped(self) -> None:
        ready = asyncio.create_task(self._ready.wait())
        done, _ = await asyncio.wait({ready, self._task}, return_when=asyncio.FIRST_COMPLETED)
        if ready not in done:
            ready.cancel()

    async def disconnect(self) -> None:
        """Close the connection; no automatic retry follows."""
        self.connection.request_disconnect()
        if self._ws is not None:
            await self._ws.close()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def aclose(self) -> None:
        await self.disconnect()
        if self._owns_http:
            await self._http.aclose()

    async def _run(self) -> None:
        while self.connection.wants_retry:
            opened = False
            try:
                async with self._ws_connect(self.ws_url) as ws:
                    self._ws = ws
                    opened = True
                    await self._on_open()
                    async for raw in ws:
                        self._handle_frame(raw)
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                logger.warning(f"[Client] Transport error: {e}")
            finally:
                self._ws = None
                self._announced = False

            if self.connection.state == ConnectionState.DISCONNECTED:
                break
            if opened:
                self.connection.on_transport_lost()
            else:
                self.connection.on_attempt_failed()
            if not self.connection.wants_retry:
                logger.warning("[Client] Reconnect budget exhausted; giving up")
                break
            await asyncio.sleep(self.connection.next_delay())

    async def _on_open(self) -> None:
        if not self.connection.on_open():
            return
        # Identity first: the server routes nothing for an unannounced connection
        await self._ws.send(json.dumps({
            "type": "user_join",
            "username": self.username,
            "room": self.room,
        }))
        self._announced = True
        self._ready.set()
        await self.load_latest()

    def _handle_frame(self, raw: Any) -> None:
        try:
            event = json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            logger.debug(f"[Client] Ignoring non-JSON frame: {raw!r}")
            return
        self.view.apply(event)
        if self._on_event is not None:
            self._on_event(event)

    async def _send(self, event: str, **fields: Any) -> bool:
        """Best-effort send; False if not connected and announced."""
        ws = self._ws
        if ws is None or not self._announced:
            logger.debug(f"[Client] Not sending {event}: not connected")
            return False
        try:
            await ws.send(json.dumps({"type": event, **fields}))
            return True
        except ConnectionClosed:
            return False

    # =========================================================================
    # Actions
    # =========================================================================

    async def send_message(self, text: str, attachment: Any = None) -> Optional[PendingMessage]:
        """Optimistically add a message and send it.

        Returns:
            The pending entry, or None if the message was empty.
        """
        pending = self.view.queue_send(text, attachment)
        if pending is None:
            return None
        await self._transmit(pending)
        await self.set_typing(False)
        return pending

    async def retry(self, client_id: str) -> Optional[PendingMessage]:
        """Resend a still-pending message under the same client id."""
        existing = self.view.pending.get(client_id)
        if existing is None:
            return None
        pending = self.view.queue_send(existing.text, existing.attachment, client_id=client_id)
        await self._transmit(pending)
        return pending

    async def _transmit(self, pending: PendingMessage) -> bool:
        fields = {"text": pending.text, "clientId": pending.client_id}
        if pending.attachment is not None:
            fields["attachment"] = pending.attachment
        return await self._send("send_message", **fields)

    async def join_room(self, room: str) -> None:
        self.room = room
        self.view.switch_room(room)
        await self._send("join_room", room=room)
        await self.load_latest()

    async def leave_room(self, room: str) -> None:
        """Explicitly leave ``room``; leaving the active room returns to the default."""
        was_active = room == self.view.active_room
        if not self.view.leave_room(room):
            return
        await self._send("leave_room", room=room, username=self.username)
        if was_active:
            self.room = self.default_room
            await self._send("join_room", room=self.default_room)
            await self.load_latest()

    async def create_room(self, name: str) -> bool:
        return await self._send("create_room", name=name)

    async def set_typing(self, is_typing: bool) -> bool:
        return await self._send("typing", isTyping=is_typing)

    async def send_private_message(self, recipient_id: str, text: str) -> bool:
        if not (text or "").strip():
            return False
        return await self._send("private_message", recipientId=recipient_id, text=text)

    async def mark_read(self, sender_id: str, recipient_id: str) -> bool:
        return await self._send("message_read", senderId=sender_id, recipientId=recipient_id)

    async def react(self, message_id: int, glyph: str) -> bool:
        return await self._send(
            "message_reaction",
            messageId=message_id, reaction=glyph, userId=self.view.connection_id,
        )

    # =========================================================================
    # History
    # =========================================================================

    async def load_latest(self) -> bool:
        return await self._fetch_page(older=False)

    async def load_older(self) -> bool:
        """Fetch the next older page; a no-op while another fetch is in flight."""
        return await self._fetch_page(older=True)

    async def _fetch_page(self, older: bool) -> bool:
        skip = self.view.begin_fetch(older=older)
        if skip is None:
            return False
        room = self.view.active_room
        try:
            resp = await self._http.get(
                "/messages", params={"room": room, "skip": skip, "limit": self.page_size}
            )
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as e:
            logger.warning(f"[Client] History fetch failed for {room}: {e}")
            self.view.fail_fetch()
            return False
        self.view.apply_page(room, data.get("messages") or [], bool(data.get("hasMore")), older=older)
        return True

    async def search(self, query: str) -> None:
        if not (query or "").strip():
            return
        try:
            resp = await self._http.get(
                "/messages/search", params={"room": self.view.active_room, "query": query}
            )
            resp.raise_for_status()
            results = resp.json().get("messages") or []
        except httpx.HTTPError as e:
            logger.warning(f"[Client] Search failed: {e}")
            results = []
        self.view.set_search_results(results)

    def clear_search(self) -> None:
        self.view.clear_search()
