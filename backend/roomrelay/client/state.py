"""Client connection state machine.

States:
    DISCONNECTED -> CONNECTING      connect requested by the user
    CONNECTING   -> CONNECTED       transport opened
    CONNECTING   -> RECONNECTING    first attempt failed, retries remain
    CONNECTED    -> RECONNECTING    transport lost
    RECONNECTING -> CONNECTED       retry succeeded
    RECONNECTING -> DISCONNECTED    retry budget exhausted (banner shown)
    any          -> DISCONNECTED    disconnect requested by the user

Once the budget is exhausted no automatic retry happens; only a fresh
:meth:`ConnectionStateMachine.request_connect` starts over. Every transition
into CONNECTED requires the client to re-announce its identity before sending
anything else.
"""
import logging
from enum import Enum
from typing import Callable, List

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class ConnectionStateMachine:
    """Tracks connection state and the reconnect budget.

    Attributes:
        max_attempts: Failed attempts tolerated before giving up.
        base_delay: Delay before the first retry, in seconds.
        max_delay: Upper bound for the exponential backoff.
        attempts: Consecutive failed attempts since the last success.
        exhausted: True when the last DISCONNECTED was caused by the budget.
    """

    def __init__(self, max_attempts: int = 5, base_delay: float = 1.0, max_delay: float = 5.0) -> None:
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.state = ConnectionState.DISCONNECTED
        self.attempts = 0
        self.exhausted = False
        self._listeners: List[Callable[[ConnectionState], None]] = []

    def add_listener(self, listener: Callable[[ConnectionState], None]) -> None:
        self._listeners.append(listener)

    def _move(self, state: ConnectionState) -> None:
        if state == self.state:
            return
        logger.info(f"[Client] Connection {self.state.value} -> {state.value}")
        self.state = state
        for listener in self._listeners:
            listener(state)

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def is_reconnecting(self) -> bool:
        return self.state == ConnectionState.RECONNECTING

    @property
    def show_banner(self) -> bool:
        """Whether the "disconnected" banner should be visible."""
        return self.state == ConnectionState.DISCONNECTED and self.exhausted

    @property
    def wants_retry(self) -> bool:
        return self.state in (ConnectionState.CONNECTING, ConnectionState.RECONNECTING)

    def request_connect(self) -> None:
        """Start a fresh connection with a full retry budget."""
        self.attempts = 0
        self.exhausted = False
        self._move(ConnectionState.CONNECTING)

    def on_open(self) -> bool:
        """Transport opened.

        Returns:
            True if the transition counts as a (re)connect, meaning identity
            must be re-announced; False if the open was unexpected and ignored.
        """
        if not self.wants_retry:
            logger.debug(f"[Client] Ignoring open while {self.state.value}")
            return False
        self.attempts = 0
        self._move(ConnectionState.CONNECTED)
        return True

    def on_transport_lost(self) -> None:
        if self.state != ConnectionState.CONNECTED:
            return
        self._move(ConnectionState.RECONNECTING)

    def on_attempt_failed(self) -> None:
        """Opening the transport failed; spend one attempt from the budget."""
        if not self.wants_retry:
            return
        self.attempts += 1
        if self.attempts >= self.max_attempts:
            self.exhausted = True
            self._move(ConnectionState.DISCONNECTED)
        else:
            self._move(ConnectionState.RECONNECTING)

    def request_disconnect(self) -> None:
        self.exhausted = False
        self._move(ConnectionState.DISCONNECTED)

    def next_delay(self) -> float:
        """Backoff before the next attempt: base * 2^(attempts-1), capped."""
        if self.attempts <= 0:
            return self.base_delay
        return min(self.base_delay * (2 ** (self.attempts - 1)), self.max_delay)
