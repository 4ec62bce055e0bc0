"""Client library: connection state, view reconciliation and the async client."""
from .client import RelayClient
from .reconciler import ClientReconciler, Notification, PendingMessage, PresenceEntry
from .state import ConnectionState, ConnectionStateMachine

__all__ = [
    "ClientReconciler",
    "ConnectionState",
    "ConnectionStateMachine",
    "Notification",
    "PendingMessage",
    "PresenceEntry",
    "RelayClient",
]
