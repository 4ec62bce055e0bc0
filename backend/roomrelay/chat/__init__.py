"""Room relay server: message log, sessions, presence and event dispatch."""
from .engine import ChatEngine
from .message_log import MessageLog
from .schemas import AddressMode, ChatMessage, ClientEvent, Outbound, ServerEvent, Session

__all__ = [
    "AddressMode",
    "ChatEngine",
    "ChatMessage",
    "ClientEvent",
    "MessageLog",
    "Outbound",
    "ServerEvent",
    "Session",
]
