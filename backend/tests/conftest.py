"""Shared test fixtures and configuration for backend tests."""
import pytest
from fastapi.testclient import TestClient

from roomrelay.chat.engine import ChatEngine
from roomrelay.chat.manager import manager
from roomrelay.config import reset_config
from roomrelay.main import app


@pytest.fixture
def api_client():
    """Provide a TestClient for the main FastAPI app.

    Named api_client (not client) to avoid shadowing the module-level
    `client = TestClient(app)` pattern used in the WebSocket tests.
    """
    return TestClient(app)


@pytest.fixture(autouse=True)
def fresh_engine():
    """Give every test an empty engine and a freshly loaded config."""
    reset_config()
    manager.configure(ChatEngine())
    yield manager.engine
    manager.configure(ChatEngine())
    reset_config()


@pytest.fixture
def engine():
    """A standalone engine, independent of the app singleton."""
    return ChatEngine(capacity=100)
