"""
Pytest configuration and fixtures for the WhatsApp Gateway API.

This module provides:
- Test settings with an isolated credential directory
- An in-memory session provider that emits lifecycle events on demand
- Connection manager and gateway fixtures wired to that provider
- A FastAPI test client with a mocked session on app.state
"""

import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from app.core.config import Settings
from app.integrations.whatsapp.connection_manager import ConnectionManager
from app.integrations.whatsapp.credential_store import CredentialStore
from app.integrations.whatsapp.provider import LifecycleEvent
from fastapi.testclient import TestClient

TEST_API_PASSWORD = "test-api-password-0123456789"


class FakeHandle:
    """Provider handle double: records calls and emits events when told to."""

    def __init__(self, credentials: Dict[str, Any]):
        self.credentials = credentials
        self.listeners: List[Any] = []
        self.started = False
        self.closed = False
        self.start_error: Optional[Exception] = None
        self.send = AsyncMock(return_value="3EB0C767D26A1D8E")

    def on_event(self, listener) -> None:
        self.listeners.append(listener)

    async def start(self) -> None:
        if self.start_error is not None:
            raise self.start_error
        self.started = True

    async def close(self) -> None:
        self.closed = True

    async def emit(self, event: LifecycleEvent) -> None:
        for listener in self.listeners:
            await listener(event)


class FakeProvider:
    """SessionProvider double handing out a fresh FakeHandle per connect."""

    def __init__(self):
        self.handles: List[FakeHandle] = []
        self.create_error: Optional[Exception] = None

    def create(self, credentials: Dict[str, Any]) -> FakeHandle:
        if self.create_error is not None:
            raise self.create_error
        handle = FakeHandle(credentials)
        self.handles.append(handle)
        return handle

    @property
    def last_handle(self) -> FakeHandle:
        return self.handles[-1]


@pytest.fixture
def test_data_dir() -> Generator[str, None, None]:
    """Create a temporary directory for test data.

    Yields:
        str: Path to the temporary test data directory
    """
    temp_dir = tempfile.mkdtemp(prefix="whatsapp_gateway_test_")
    yield temp_dir
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def auth_dir(test_data_dir: str) -> Path:
    return Path(test_data_dir) / "auth_info"


@pytest.fixture
def test_settings(auth_dir: Path) -> Settings:
    """Create test settings with isolated test environment.

    Args:
        auth_dir: Temporary credential directory

    Returns:
        Settings: Configured settings instance for testing
    """
    return Settings(
        DEBUG=True,
        ENVIRONMENT="testing",
        API_PASSWORD=TEST_API_PASSWORD,
        AUTH_DIR=str(auth_dir),
        SESSION_PROVIDER="",
        RECONNECT_DELAY_SECONDS=0.01,
    )


@pytest.fixture
def credential_store(auth_dir: Path) -> CredentialStore:
    return CredentialStore(auth_dir, lock_timeout=1.0)


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def enrollment_renderer() -> MagicMock:
    return MagicMock()


@pytest.fixture
def connection_manager(
    fake_provider: FakeProvider,
    credential_store: CredentialStore,
    enrollment_renderer: MagicMock,
) -> ConnectionManager:
    """Create ConnectionManager wired to the fake provider with a short retry delay."""
    return ConnectionManager(
        provider=fake_provider,
        credential_store=credential_store,
        reconnect_delay=0.01,
        enrollment_renderer=enrollment_renderer,
    )


@pytest.fixture
def mock_connection_manager() -> MagicMock:
    """Connection manager double for route tests; ready with a live handle."""
    manager = MagicMock(spec=ConnectionManager)
    manager.is_ready.return_value = True
    manager.handle = FakeHandle({})
    manager.reconnect = AsyncMock(return_value=True)
    manager.snapshot.return_value = {
        "state": "connected",
        "ready": True,
        "generation": 1,
        "awaiting_enrollment": False,
        "retry_pending": False,
        "last_disconnect_reason": None,
    }
    return manager


@pytest.fixture
def test_client(
    test_settings: Settings, mock_connection_manager: MagicMock
) -> Generator[TestClient, None, None]:
    """Create a FastAPI test client.

    The lifespan is not run; the session components are placed on app.state
    directly so no provider is needed.

    Args:
        test_settings: Test settings instance
        mock_connection_manager: Connection manager double

    Yields:
        TestClient: FastAPI test client
    """
    # Import app here to avoid triggering Settings validation at module load time
    from app.core.config import get_settings
    from app.integrations.whatsapp.message_gateway import MessageGateway
    from app.main import app

    app.dependency_overrides[get_settings] = lambda: test_settings
    app.state.connection_manager = mock_connection_manager
    app.state.message_gateway = MessageGateway(mock_connection_manager)
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()
    del app.state.connection_manager
    del app.state.message_gateway


@pytest.fixture
def auth_headers() -> Dict[str, str]:
    return {"x-api-password": TEST_API_PASSWORD}
