"""Tests for the client connection state machine."""

from roomrelay.client.state import ConnectionState, ConnectionStateMachine


class TestConnectionStateMachine:
    """Tests for ConnectionStateMachine transitions."""

    def test_starts_disconnected_without_banner(self):
        machine = ConnectionStateMachine()
        assert machine.state == ConnectionState.DISCONNECTED
        assert machine.show_banner is False
        assert machine.wants_retry is False

    def test_connect_then_open(self):
        machine = ConnectionStateMachine()
        machine.request_connect()
        assert machine.state == ConnectionState.CONNECTING
        assert machine.on_open() is True
        assert machine.is_connected

    def test_transport_loss_enters_reconnecting(self):
        machine = ConnectionStateMachine()
        machine.request_connect()
        machine.on_open()
        machine.on_transport_lost()
        assert machine.is_reconnecting
        assert machine.wants_retry

    def test_reconnect_success_resets_budget(self):
        machine = ConnectionStateMachine(max_attempts=3)
        machine.request_connect()
        machine.on_attempt_failed()
        machine.on_attempt_failed()
        assert machine.attempts == 2
        assert machine.on_open() is True
        assert machine.attempts == 0

    def test_budget_exhaustion_shows_banner_and_stops(self):
        machine = ConnectionStateMachine(max_attempts=3)
        machine.request_connect()
        for _ in range(3):
            machine.on_attempt_failed()
        assert machine.state == ConnectionState.DISCONNECTED
        assert machine.show_banner is True
        assert machine.wants_retry is False

        # No automatic retry once exhausted
        machine.on_attempt_failed()
        assert machine.attempts == 3
        assert machine.on_open() is False
        assert machine.state == ConnectionState.DISCONNECTED

    def test_fresh_connect_after_exhaustion(self):
        machine = ConnectionStateMachine(max_attempts=1)
        machine.request_connect()
        machine.on_attempt_failed()
        assert machine.show_banner
        machine.request_connect()
        assert machine.state == ConnectionState.CONNECTING
        assert machine.attempts == 0
        assert machine.show_banner is False

    def test_user_disconnect_has_no_banner(self):
        machine = ConnectionStateMachine()
        machine.request_connect()
        machine.on_open()
        machine.request_disconnect()
        assert machine.state == ConnectionState.DISCONNECTED
        assert machine.show_banner is False
        machine.on_transport_lost()
        assert machine.state == ConnectionState.DISCONNECTED

    def test_backoff_is_exponential_and_capped(self):
        machine = ConnectionStateMachine(max_attempts=10, base_delay=1.0, max_delay=5.0)
        machine.request_connect()
        delays = []
        for _ in range(5):
            machine.on_attempt_failed()
            delays.append(machine.next_delay())
        assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_listeners_see_each_transition(self):
        machine = ConnectionStateMachine(max_attempts=1)
        seen = []
        machine.add_listener(seen.append)
        machine.request_connect()
        machine.on_open()
        machine.on_transport_lost()
        machine.on_attempt_failed()
        assert seen == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.RECONNECTING,
            ConnectionState.DISCONNECTED,
        ]
